"""Content-addressed result cache for Language Service calls.

Two tiers: a short-lived in-process map guarded by a lock, in front of the
durable cache storage. Concurrent misses on one key share a single
computation. Values are JSON-compatible dicts; the caller converts them back
to result models.
"""

import asyncio
import hashlib
import logging
from typing import Any, Awaitable, Callable

from models import now_ms

from chatsync.config import settings
from chatsync.store import CacheStorage

logger = logging.getLogger(__name__)

Value = dict[str, Any]
Clock = Callable[[], int]


def cache_key(operation: str, **fields: Any) -> str:
    """SHA-256 hex key over the operation and its relevant request fields.

    Fields are joined in name order, so callers may pass them in any order.
    None and empty values hash the same.
    """
    parts = [operation] + [
        f"{name}={'' if fields[name] is None else fields[name]}" for name in sorted(fields)
    ]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


class MemoryResultCache:
    """Bounded in-process cache tier.

    The lock guards only the entry map. A miss registers an in-flight future
    for its key, so concurrent callers of the same key wait for that one
    computation while other keys compute in parallel.
    """

    def __init__(
        self,
        ttl_seconds: int | None = None,
        max_entries: int | None = None,
        clock: Clock = now_ms,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.memory_cache_ttl_seconds
        self.max_entries = max_entries if max_entries is not None else settings.memory_cache_max_entries
        self.clock = clock
        # key -> (value, expires_at ms)
        self._entries: dict[str, tuple[Value, int]] = {}
        self._pending: dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _fresh(self, key: str, now: int) -> Value | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if now < expires_at:
            return value
        del self._entries[key]
        return None

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[tuple[Value, bool]]],
        ttl_seconds: int | None = None,
    ) -> tuple[Value, bool]:
        """Return (value, cached) for key, computing and storing it on a miss.

        ``compute`` itself reports whether it was served from a lower tier.
        ttl_seconds caps this entry's lifetime below the tier default.
        Callers that joined another caller's computation get its value as
        cached, or its error.
        """
        while True:
            async with self._lock:
                value = self._fresh(key, self.clock())
                if value is not None:
                    logger.debug(f"Memory cache hit {key[:12]}")
                    return value, True
                pending = self._pending.get(key)
                if pending is None:
                    pending = asyncio.get_running_loop().create_future()
                    # waiters read the error; don't log it again when nobody joined
                    pending.add_done_callback(lambda f: f.cancelled() or f.exception())
                    self._pending[key] = pending
                    break
            try:
                return await asyncio.shield(pending), True
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                # the computing caller was cancelled; take over
                logger.debug(f"Computation of {key[:12]} abandoned, retrying")

        try:
            value, cached = await compute()
        except BaseException as e:
            self._pending.pop(key, None)
            if isinstance(e, asyncio.CancelledError):
                pending.cancel()
            else:
                pending.set_exception(e)
            raise

        try:
            async with self._lock:
                now = self.clock()
                ttl = self.ttl_seconds if ttl_seconds is None else min(self.ttl_seconds, ttl_seconds)
                self._entries[key] = (value, now + ttl * 1000)
                if len(self._entries) > self.max_entries:
                    self._sweep(now)
        finally:
            self._pending.pop(key, None)
            pending.set_result(value)
        return value, cached

    def _sweep(self, now: int) -> None:
        """Drop expired entries, then the soonest-expiring ones until under the bound."""
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            by_expiry = sorted(self._entries, key=lambda k: self._entries[k][1])
            for key in by_expiry[:overflow]:
                del self._entries[key]

    async def clear(self) -> None:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info(f"Cleared {count} in-process cache entries")


class ResultCache:
    """Durable cache with an optional in-process tier in front.

    Storage failures are soft: a failed read is a miss and a failed write
    only loses the cached copy.
    """

    def __init__(
        self,
        storage: CacheStorage,
        memory: MemoryResultCache | None = None,
        clock: Clock = now_ms,
    ):
        self.storage = storage
        self.memory = memory
        self.clock = clock

    async def _read(self, key: str, ttl_seconds: int) -> Value | None:
        try:
            entry = await self.storage.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key[:12]}, treating as miss: {e!r}")
            return None
        if entry is None:
            return None
        value, created_at = entry
        if self.clock() - created_at < ttl_seconds * 1000:
            return value
        logger.debug(f"Cache entry {key[:12]} expired")
        try:
            await self.storage.delete(key)
        except Exception as e:
            logger.warning(f"Could not delete expired cache entry {key[:12]}: {e!r}")
        return None

    async def _write(self, key: str, value: Value) -> None:
        try:
            await self.storage.set(key, value, self.clock())
        except Exception as e:
            logger.warning(f"Cache write failed for {key[:12]}: {e!r}")

    async def get_or_compute(
        self, key: str, ttl_seconds: int, compute: Callable[[], Awaitable[Value]]
    ) -> tuple[Value, bool]:
        """Return (value, cached), calling compute only when no tier has a fresh value."""

        async def load() -> tuple[Value, bool]:
            value = await self._read(key, ttl_seconds)
            if value is not None:
                logger.debug(f"Cache hit {key[:12]}")
                return value, True
            logger.debug(f"Cache miss {key[:12]}")
            value = await compute()
            await self._write(key, value)
            return value, False

        if self.memory is None:
            return await load()
        return await self.memory.get_or_compute(key, load, ttl_seconds)
