"""TTL-keyed store abstraction shared by the protection components.

Rate limit windows and idempotency records live behind the same small
interface so a shared backend (Redis) can replace the process-local map
without touching call sites. Values are JSON-compatible dicts.
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from matchguard.app.core.logging import get_logger
from matchguard.app.exceptions import StoreError

logger = get_logger(__name__)

Clock = Callable[[], float]


@dataclass
class _StoreEntry:
    """Internal store entry with TTL tracking."""

    value: dict[str, Any]
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class TTLStore(ABC):
    """Abstract base class for TTL store backends."""

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        """Return the live value for key, or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: dict[str, Any], ttl: float) -> None:
        """Store value under key for ttl seconds, replacing any entry."""

    @abstractmethod
    async def add(self, key: str, value: dict[str, Any], ttl: float) -> bool:
        """Store value only if key is absent or expired.

        Returns:
            True if the value was written, False if a live entry exists.
        """

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Deleting a missing key is not an error."""

    @abstractmethod
    async def sweep(self) -> int:
        """Remove expired entries and return how many were removed."""

    @abstractmethod
    async def keys(self) -> list[str]:
        """Return the keys of all live entries."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every entry."""

    @abstractmethod
    async def stats(self) -> dict[str, int]:
        """Return record count and an estimate of memory use in bytes."""


class InMemoryTTLStore(TTLStore):
    """Process-local TTL store.

    Entries past their expiry are treated as absent on read and removed by
    :meth:`sweep`. Not shared between processes: horizontally scaled
    deployments get independent counters and caches per instance.
    """

    def __init__(self, clock: Clock = time.time) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._data[key]
                return None
            return entry.value

    async def set(self, key: str, value: dict[str, Any], ttl: float) -> None:
        async with self._lock:
            self._data[key] = _StoreEntry(value=value, expires_at=self._clock() + ttl)

    async def add(self, key: str, value: dict[str, Any], ttl: float) -> bool:
        async with self._lock:
            now = self._clock()
            entry = self._data.get(key)
            if entry is not None and not entry.is_expired(now):
                return False
            self._data[key] = _StoreEntry(value=value, expires_at=now + ttl)
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def sweep(self) -> int:
        async with self._lock:
            now = self._clock()
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired(now)
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)

    async def keys(self) -> list[str]:
        async with self._lock:
            now = self._clock()
            return [k for k, e in self._data.items() if not e.is_expired(now)]

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            # Rough estimate: serialized size at two bytes per character
            size = sum(
                len(json.dumps(entry.value, default=str)) * 2
                for entry in self._data.values()
            )
            return {"total_records": len(self._data), "estimated_bytes": size}


class RedisTTLStore(TTLStore):
    """Redis-backed TTL store shared across processes.

    Redis expires keys itself, so :meth:`sweep` has nothing to do.
    All keys are namespaced under ``prefix``.

    Example:
        >>> store = RedisTTLStore("redis://localhost:6379/0", prefix="matchguard:rl")
        >>> await store.set("checkout:u1", {"count": 1}, ttl=60)
    """

    def __init__(
        self,
        redis_url: str,
        prefix: str = "matchguard",
        redis_client: Optional[Any] = None,
    ) -> None:
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = redis_client

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self._get_client().get(self._key(key))
        except RedisError as e:
            raise StoreError(f"Redis get failed: {e}") from e
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: dict[str, Any], ttl: float) -> None:
        try:
            await self._get_client().set(
                self._key(key), json.dumps(value, default=str), px=max(1, int(ttl * 1000))
            )
        except RedisError as e:
            raise StoreError(f"Redis set failed: {e}") from e

    async def add(self, key: str, value: dict[str, Any], ttl: float) -> bool:
        try:
            written = await self._get_client().set(
                self._key(key),
                json.dumps(value, default=str),
                px=max(1, int(ttl * 1000)),
                nx=True,
            )
        except RedisError as e:
            raise StoreError(f"Redis add failed: {e}") from e
        return bool(written)

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(self._key(key))
        except RedisError as e:
            raise StoreError(f"Redis delete failed: {e}") from e

    async def sweep(self) -> int:
        return 0

    async def keys(self) -> list[str]:
        client = self._get_client()
        strip = len(self._prefix) + 1
        try:
            found = [k async for k in client.scan_iter(match=f"{self._prefix}:*")]
        except RedisError as e:
            raise StoreError(f"Redis scan failed: {e}") from e
        return [(k.decode() if isinstance(k, bytes) else k)[strip:] for k in found]

    async def clear(self) -> None:
        # Only this store's namespace; never FLUSHDB on a shared instance.
        for key in await self.keys():
            await self.delete(key)

    async def stats(self) -> dict[str, int]:
        return {"total_records": len(await self.keys()), "estimated_bytes": 0}

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_store(namespace: str, backend: Optional[str] = None) -> TTLStore:
    """Create a store for one protection component.

    Args:
        namespace: Key namespace, e.g. "ratelimit" or "idempotency"
        backend: 'memory' or 'redis'; defaults to settings.store_backend

    Returns:
        A TTLStore instance
    """
    from matchguard.app.core.config import settings

    backend = backend or settings.store_backend
    if backend == "redis":
        logger.info(f"Using Redis store for {namespace}")
        return RedisTTLStore(
            settings.redis_url, prefix=f"{settings.store_key_prefix}:{namespace}"
        )
    logger.debug(f"Using in-memory store for {namespace}")
    return InMemoryTTLStore()


class PeriodicSweeper:
    """Background task that removes expired entries from a store.

    Sweeps only delete entries that are already expired, and a read of an
    expired entry is already a miss, so they never conflict with requests.

    Usage:
        sweeper = PeriodicSweeper(store, interval=300, name="ratelimit")
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(self, store: TTLStore, interval: float, name: str = "store"):
        self._store = store
        self._interval = interval
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def sweep_once(self) -> int:
        removed = await self._store.sweep()
        if removed:
            logger.info(
                f"Swept {removed} expired {self._name} records",
                extra={"store": self._name, "removed": removed},
            )
        return removed

    async def start(self) -> None:
        if self._task is not None:
            logger.debug(f"{self._name} sweeper already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started {self._name} sweeper (interval: {self._interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning(f"{self._name} sweeper did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info(f"Stopped {self._name} sweeper")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
            else:
                break

            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error during {self._name} sweep: {e}")
