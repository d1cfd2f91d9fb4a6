"""Storage for fixed-window rate limit counters."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from chatsync.db import Database


@dataclass
class WindowCounter:
    """Requests counted for one (user, operation) in the current window."""

    user_id: str
    operation: str
    window_start: int  # ms
    count: int = 0


class RateLimitStorage(ABC):
    @abstractmethod
    async def load(self, user_id: str, operation: str) -> WindowCounter | None: ...

    @abstractmethod
    async def save(self, counter: WindowCounter) -> None: ...


class InMemoryRateLimitStorage(RateLimitStorage):
    def __init__(self):
        self._counters: dict[tuple[str, str], WindowCounter] = {}

    async def load(self, user_id: str, operation: str) -> WindowCounter | None:
        counter = self._counters.get((user_id, operation))
        if counter is None:
            return None
        return WindowCounter(counter.user_id, counter.operation, counter.window_start, counter.count)

    async def save(self, counter: WindowCounter) -> None:
        self._counters[(counter.user_id, counter.operation)] = WindowCounter(
            counter.user_id, counter.operation, counter.window_start, counter.count
        )


class PostgresRateLimitStorage(RateLimitStorage):
    def __init__(self, database: Database):
        self.database = database

    async def load(self, user_id: str, operation: str) -> WindowCounter | None:
        row = await self.database.get_rate_limit(user_id, operation)
        if row is None:
            return None
        window_start, count = row
        return WindowCounter(user_id, operation, window_start, count)

    async def save(self, counter: WindowCounter) -> None:
        await self.database.save_rate_limit(
            counter.user_id, counter.operation, counter.window_start, counter.count
        )
