"""At-most-once execution of side-effecting operations per idempotency key.

Per key the lifecycle is ``absent -> processing -> stored -> absent``.
Processing is implicit: nothing is written until the first response is
stored, so duplicates that arrive while the first request is still running
are not deduplicated. The payments provider's own idempotency keys are the
primary defense against double charges; this cache collapses retries.
"""

import asyncio
import time
from collections import deque
from dataclasses import replace
from typing import Any, Awaitable, Callable, Optional

from starlette.requests import Request

from matchguard.app.core.config import settings
from matchguard.app.core.logging import get_log_context, get_logger
from matchguard.app.core.store import TTLStore, create_store
from matchguard.app.middleware.idempotency.configs import (
    IDEMPOTENCY_CONFIGS,
    IdempotencyClass,
)
from matchguard.app.middleware.idempotency.keys import default_key
from matchguard.app.middleware.idempotency.models import (
    IdempotencyCheck,
    IdempotencyConfig,
    IdempotencyKeyGenerator,
    IdempotencyOutcome,
    IdempotencyRecord,
)

logger = get_logger(__name__)

Processor = Callable[[], Awaitable[tuple[Any, int]]]

# Process-wide store shared by every handler (singleton pattern)
_store_instance: Optional[TTLStore] = None


def get_idempotency_store() -> TTLStore:
    global _store_instance
    if _store_instance is None:
        _store_instance = create_store("idempotency")
    return _store_instance


def reset_idempotency_store() -> None:
    """Drop the shared store. Primarily useful for testing."""
    global _store_instance
    _store_instance = None


class IdempotencyAnalytics:
    """Running counters for dashboards.

    Response times are kept for the most recent ``window`` requests only.
    """

    def __init__(self, window: int = 1000) -> None:
        self._lock = asyncio.Lock()
        self._window = window
        self.reset()

    def reset(self) -> None:
        self.total_requests = 0
        self.idempotent_responses = 0
        self._response_times: deque[float] = deque(maxlen=self._window)

    async def record_request(self, was_idempotent: bool, response_time_ms: float) -> None:
        async with self._lock:
            self.total_requests += 1
            self._response_times.append(response_time_ms)
            if was_idempotent:
                self.idempotent_responses += 1

    def get_analytics(self) -> dict[str, float]:
        hit_rate = (
            self.idempotent_responses / self.total_requests * 100
            if self.total_requests
            else 0.0
        )
        average = (
            sum(self._response_times) / len(self._response_times)
            if self._response_times
            else 0.0
        )
        return {
            "total_requests": self.total_requests,
            "idempotent_responses": self.idempotent_responses,
            "cache_hit_rate": hit_rate,
            "cache_miss_rate": 100 - hit_rate,
            "average_response_time_ms": average,
        }


idempotency_analytics = IdempotencyAnalytics()


class IdempotencyHandler:
    """Check-then-process-then-store wrapper around a business handler."""

    def __init__(
        self,
        config: IdempotencyConfig,
        store: Optional[TTLStore] = None,
        clock: Callable[[], float] = time.time,
        analytics: Optional[IdempotencyAnalytics] = None,
        name: str = "default",
    ):
        self.config = config
        self.name = name
        self._store = store
        self._clock = clock
        self.analytics = analytics or idempotency_analytics

    @property
    def store(self) -> TTLStore:
        if self._store is not None:
            return self._store
        return get_idempotency_store()

    def generate_key(self, request: Request, body: Any = None) -> str:
        generator = self.config.key_generator or default_key
        return generator(request, body, self._clock())

    async def check_idempotency(
        self, request: Request, body: Any = None
    ) -> IdempotencyCheck:
        """Look the request up; a hit carries the first response for replay.

        Store errors propagate: proceeding unprotected on a write path is
        less safe than failing visibly.
        """
        method = request.method.upper()
        if not settings.idempotency_enabled or method not in self.config.enabled_methods:
            return IdempotencyCheck(should_process=True, idempotency_key="")

        key = self.generate_key(request, body)
        raw = await self.store.get(key)
        if raw is None:
            return IdempotencyCheck(should_process=True, idempotency_key=key)

        record = IdempotencyRecord.from_dict(raw)
        logger.info(
            "Found cached response",
            extra=get_log_context(endpoint_class=self.name, idempotency_key=key),
        )
        return IdempotencyCheck(
            should_process=False,
            idempotency_key=key,
            cached_response=record.response,
            cached_status_code=record.status_code,
        )

    async def store_response(
        self, idempotency_key: str, response: Any, status_code: int
    ) -> bool:
        """Persist the first response for a key.

        Returns:
            True if stored, False if the key was empty or already held a
            record (the first record is kept).
        """
        if not idempotency_key:
            return False

        now = self._clock()
        record = IdempotencyRecord(
            key=idempotency_key,
            response=response,
            status_code=status_code,
            created_at=now,
            expires_at=now + self.config.ttl_seconds,
        )
        stored = await self.store.add(
            idempotency_key, record.to_dict(), ttl=self.config.ttl_seconds
        )
        if stored:
            logger.debug(
                f"Stored response for key: {idempotency_key[:20]}...",
                extra=get_log_context(endpoint_class=self.name),
            )
        else:
            logger.warning(
                "Concurrent duplicate finished processing; keeping first response",
                extra=get_log_context(
                    endpoint_class=self.name, idempotency_key=idempotency_key
                ),
            )
        return stored

    async def with_idempotency(
        self,
        request: Request,
        processor: Processor,
        body: Any = None,
    ) -> IdempotencyOutcome:
        """Replay a cached response or run processor and store its result.

        Processor exceptions propagate and nothing is stored for them.
        Responses with a 5xx status are returned but not stored, so the
        client's retry runs again.
        """
        start = time.perf_counter()

        check = await self.check_idempotency(request, body)
        if not check.should_process:
            elapsed_ms = (time.perf_counter() - start) * 1000
            await self.analytics.record_request(True, elapsed_ms)
            return IdempotencyOutcome(
                response=check.cached_response,
                status_code=check.cached_status_code or 200,
                was_idempotent=True,
            )

        response, status_code = await processor()
        if status_code < 500:
            await self.store_response(check.idempotency_key, response, status_code)

        elapsed_ms = (time.perf_counter() - start) * 1000
        await self.analytics.record_request(False, elapsed_ms)
        logger.info(
            f"Processed and stored response ({elapsed_ms:.1f}ms)",
            extra=get_log_context(
                endpoint_class=self.name, idempotency_key=check.idempotency_key or None
            ),
        )
        return IdempotencyOutcome(
            response=response, status_code=status_code, was_idempotent=False
        )


def create_idempotency_handler(
    idempotency_class: IdempotencyClass,
    store: Optional[TTLStore] = None,
    clock: Callable[[], float] = time.time,
    key_generator: Optional[IdempotencyKeyGenerator] = None,
) -> IdempotencyHandler:
    """Create a handler for a registered idempotency class.

    ``key_generator`` replaces the registered one, e.g. to give two
    operations of the same class distinct keys.
    """
    config = IDEMPOTENCY_CONFIGS[idempotency_class]
    if key_generator is not None:
        config = replace(config, key_generator=key_generator)
    return IdempotencyHandler(
        config,
        store=store,
        clock=clock,
        name=idempotency_class.value,
    )


async def get_idempotency_stats(store: Optional[TTLStore] = None) -> dict[str, float]:
    stats = await (store or get_idempotency_store()).stats()
    return {
        "total_records": stats["total_records"],
        "store_size": stats["estimated_bytes"],
        "memory_usage_mb": round(stats["estimated_bytes"] / (1024 * 1024), 2),
    }


async def clear_idempotency_cache(store: Optional[TTLStore] = None) -> None:
    await (store or get_idempotency_store()).clear()
    logger.info("Idempotency cache cleared")
