"""Fixed-window rate limiting per (user, operation)."""

import asyncio
import logging
import math
from typing import Callable

from models import now_ms

from chatsync.config import RateLimitConfig, settings
from chatsync.errors import RateLimitExceededError
from chatsync.store import RateLimitStorage, WindowCounter

logger = logging.getLogger(__name__)


class RateLimiter:
    """Counts attempts per user and operation in fixed windows.

    A storage failure lets the request through; an outage of the counter
    store should not take the AI features down with it.
    """

    def __init__(
        self,
        storage: RateLimitStorage,
        limits: dict[str, RateLimitConfig] | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.storage = storage
        self.limits = limits
        self.clock = clock
        self._lock = asyncio.Lock()

    def limit_for(self, operation: str) -> RateLimitConfig:
        if self.limits is not None and operation in self.limits:
            return self.limits[operation]
        return settings.rate_limit_for(operation)

    async def check(self, user_id: str, operation: str) -> WindowCounter | None:
        """Count one attempt.

        Returns:
            The updated counter, or None if the counter store was unavailable

        Raises:
            RateLimitExceededError: If the window's budget is already spent

        """
        config = self.limit_for(operation)
        window_ms = config.window_minutes * 60 * 1000

        async with self._lock:
            now = self.clock()
            try:
                counter = await self.storage.load(user_id, operation)
            except Exception as e:
                logger.warning(f"Rate limit lookup failed for {user_id}/{operation}, allowing: {e!r}")
                return None

            if counter is None or now - counter.window_start >= window_ms:
                counter = WindowCounter(user_id, operation, window_start=now, count=0)

            if counter.count + 1 > config.max_requests:
                retry_after = max(1, math.ceil((counter.window_start + window_ms - now) / 1000))
                logger.warning(
                    f"Rate limit hit for {user_id}/{operation}: "
                    f"{counter.count}/{config.max_requests}, retry in {retry_after}s"
                )
                raise RateLimitExceededError(operation, retry_after)

            counter.count += 1
            try:
                await self.storage.save(counter)
            except Exception as e:
                logger.warning(f"Rate limit update failed for {user_id}/{operation}: {e!r}")
            return counter
