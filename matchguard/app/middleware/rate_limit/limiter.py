"""Fixed-window request counter keyed by caller identity and endpoint class."""

import math
import re
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from starlette.requests import Request

from matchguard.app.core.config import settings
from matchguard.app.core.logging import get_log_context, get_logger
from matchguard.app.core.store import TTLStore, create_store
from matchguard.app.exceptions import RateLimitExceededError
from matchguard.app.middleware.rate_limit.configs import RATE_LIMIT_CONFIGS
from matchguard.app.middleware.rate_limit.models import (
    EndpointClass,
    RateLimitAnalytics,
    RateLimitConfig,
    RateLimitRecord,
    RateLimitResult,
)

logger = get_logger(__name__)

# Process-wide store shared by every limiter (singleton pattern)
_store_instance: Optional[TTLStore] = None


def get_rate_limit_store() -> TTLStore:
    global _store_instance
    if _store_instance is None:
        _store_instance = create_store("ratelimit")
    return _store_instance


def reset_rate_limit_store() -> None:
    """Drop the shared store. Primarily useful for testing."""
    global _store_instance
    _store_instance = None


class RateLimiter:
    """Admit or reject requests for one endpoint class.

    The first request for a key opens a window of ``window_seconds``; every
    request inside it increments the count, and the request is admitted while
    ``count <= max_requests``. A request after ``window_end`` starts a new
    window with count 1.

    Store failures fail open by default (availability over strict
    throttling on the payment flow); set ``fail_open=False`` on the config
    or in settings to reject instead.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        store: Optional[TTLStore] = None,
        clock: Callable[[], float] = time.time,
        name: str = "default",
    ):
        self.config = config
        self.name = name
        self._store = store
        self._clock = clock

    @property
    def store(self) -> TTLStore:
        """The injected store, else the shared one."""
        if self._store is not None:
            return self._store
        return get_rate_limit_store()

    @property
    def fail_open(self) -> bool:
        if self.config.fail_open is not None:
            return self.config.fail_open
        return settings.rate_limit_fail_open

    def _resolve_key(self, request: Request) -> str:
        if self.config.key_generator is None:
            return "default"
        return self.config.key_generator(request)

    async def check_limit(self, request: Request) -> RateLimitResult:
        """Count this request against its key and report the quota state."""
        if not settings.rate_limit_enabled:
            return self._full_quota(self._clock())
        return await self.check_key(self._resolve_key(request))

    async def check_key(self, key: str) -> RateLimitResult:
        now = self._clock()
        try:
            record = await self._increment(key, now)
        except Exception as e:
            logger.error(
                f"Error checking rate limit: {e}",
                extra=get_log_context(endpoint_class=self.name, rate_limit_key=key),
            )
            return self._handle_store_failure(now)

        max_requests = self.config.max_requests
        success = record.count <= max_requests
        return RateLimitResult(
            success=success,
            limit=max_requests,
            remaining=max(0, max_requests - record.count),
            reset_time=math.ceil(record.window_end),
            retry_after=None if success else max(1, math.ceil(record.window_end - now)),
        )

    async def enforce(self, request: Request) -> RateLimitResult:
        """Like check_limit, but raise RateLimitExceededError on rejection."""
        result = await self.check_limit(request)
        if not result.success:
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    endpoint_class=self.name,
                    path=request.url.path,
                    method=request.method,
                    retry_after=result.retry_after,
                ),
            )
            raise RateLimitExceededError(
                limit=result.limit,
                reset_time=result.reset_time,
                retry_after=result.retry_after,
            )
        return result

    async def get_analytics(self, request: Request) -> RateLimitAnalytics:
        """Report the caller's current window without counting a request."""
        now = self._clock()
        raw = await self.store.get(self._resolve_key(request))
        record = RateLimitRecord.from_dict(raw) if raw else None
        if record is not None and record.is_expired(now):
            record = None

        count = record.count if record else 0
        return RateLimitAnalytics(
            endpoint=self.name,
            limit=self.config.max_requests,
            current=count,
            remaining=max(0, self.config.max_requests - count),
            reset_at=record.window_end if record else now + self.config.window_seconds,
            is_limited=count >= self.config.max_requests,
        )

    async def _increment(self, key: str, now: float) -> RateLimitRecord:
        raw = await self.store.get(key)
        record = RateLimitRecord.from_dict(raw) if raw else None

        if record is None or record.is_expired(now):
            record = RateLimitRecord(
                key=key,
                count=1,
                window_start=now,
                window_end=now + self.config.window_seconds,
            )
        else:
            record.count += 1

        await self.store.set(key, record.to_dict(), ttl=record.window_end - now)
        return record

    def _full_quota(self, now: float) -> RateLimitResult:
        return RateLimitResult(
            success=True,
            limit=self.config.max_requests,
            remaining=self.config.max_requests,
            reset_time=math.ceil(now + self.config.window_seconds),
        )

    def _handle_store_failure(self, now: float) -> RateLimitResult:
        if self.fail_open:
            logger.error(
                f"Rate limiting fail-open triggered for {self.name}. "
                "Request allowed without rate limit check."
            )
            return self._full_quota(now)

        logger.warning(
            f"Rate limiting fail-closed triggered for {self.name}. Request denied."
        )
        window = math.ceil(self.config.window_seconds)
        return RateLimitResult(
            success=False,
            limit=self.config.max_requests,
            remaining=0,
            reset_time=math.ceil(now + self.config.window_seconds),
            retry_after=window,
        )


def create_rate_limiter(
    endpoint_class: EndpointClass,
    store: Optional[TTLStore] = None,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """Create a rate limiter for a registered endpoint class."""
    return RateLimiter(
        RATE_LIMIT_CONFIGS[endpoint_class],
        store=store,
        clock=clock,
        name=endpoint_class.value,
    )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    """Headers attached to every admitted response."""
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(result.reset_time),
    }


# Coarse tiers for endpoints outside the subscription API

_WINDOW_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_window(window: str) -> int:
    """Parse a window string such as "30s", "1m", "1h" or "1d" into seconds."""
    match = re.fullmatch(r"(\d+)([smhd])", window.strip())
    if not match:
        raise ValueError(f"Invalid time window: {window}")
    return int(match.group(1)) * _WINDOW_UNITS[match.group(2)]


@dataclass(frozen=True)
class RateLimitTier:
    requests: int
    window: str


RATE_LIMIT_TIERS: Mapping[str, RateLimitTier] = MappingProxyType({
    "public": RateLimitTier(100, "1m"),
    "auth": RateLimitTier(20, "1m"),
    "authenticated": RateLimitTier(1000, "1m"),
    "security": RateLimitTier(200, "1m"),
    "messaging": RateLimitTier(50, "1m"),
    "search": RateLimitTier(100, "1m"),
    "upload": RateLimitTier(10, "1m"),
    "email": RateLimitTier(5, "1h"),
    "critical": RateLimitTier(10, "1h"),
})


async def rate_limit_by_user_type(
    user_id: Optional[str],
    tier: str,
    ip: str,
    store: Optional[TTLStore] = None,
    clock: Callable[[], float] = time.time,
) -> RateLimitResult:
    """Check a tiered limit keyed by user when known, otherwise by IP.

    Raises:
        KeyError: If tier is not a known tier name
    """
    config = RATE_LIMIT_TIERS[tier]
    limiter = RateLimiter(
        RateLimitConfig(
            window_seconds=parse_window(config.window),
            max_requests=config.requests,
        ),
        store=store,
        clock=clock,
        name=tier,
    )
    if not settings.rate_limit_enabled:
        return limiter._full_quota(clock())
    key = f"user:{user_id}:{tier}" if user_id else f"ip:{ip}:{tier}"
    return await limiter.check_key(key)
