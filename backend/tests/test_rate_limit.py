"""Tests for the fixed-window rate limiter."""

import pytest

from chatsync.ai.rate_limit import RateLimiter
from chatsync.config import RateLimitConfig
from chatsync.errors import RateLimitExceededError
from chatsync.store import InMemoryRateLimitStorage


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


class DownStorage(InMemoryRateLimitStorage):
    async def load(self, user_id, operation):
        raise ConnectionError("counter store down")


def limiter(max_requests=3, window_minutes=1, clock=None, storage=None):
    return RateLimiter(
        storage or InMemoryRateLimitStorage(),
        limits={"translation": RateLimitConfig(max_requests=max_requests, window_minutes=window_minutes)},
        clock=clock or FakeClock(),
    )


class TestRateLimiter:
    """Test per-user, per-operation budgets."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_rejects(self):
        storage = InMemoryRateLimitStorage()
        rl = limiter(max_requests=3, storage=storage)

        counts = [(await rl.check("alice", "translation")).count for _ in range(3)]
        assert counts == [1, 2, 3]

        with pytest.raises(RateLimitExceededError) as exc_info:
            await rl.check("alice", "translation")

        assert exc_info.value.operation == "translation"
        # the rejected attempt is not counted
        assert (await storage.load("alice", "translation")).count == 3

    @pytest.mark.asyncio
    async def test_retry_after_counts_down_to_window_end(self):
        clock = FakeClock()
        rl = limiter(max_requests=1, window_minutes=1, clock=clock)
        await rl.check("alice", "translation")

        clock.now += 20_500
        with pytest.raises(RateLimitExceededError) as exc_info:
            await rl.check("alice", "translation")

        assert exc_info.value.retry_after_seconds == 40
        assert "1 minutes" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_window_resets(self):
        clock = FakeClock()
        rl = limiter(max_requests=1, window_minutes=1, clock=clock)
        await rl.check("alice", "translation")

        clock.now += 60_000
        counter = await rl.check("alice", "translation")

        assert counter.count == 1
        assert counter.window_start == clock.now

    @pytest.mark.asyncio
    async def test_users_and_operations_are_independent(self):
        rl = limiter(max_requests=1)
        await rl.check("alice", "translation")

        await rl.check("bob", "translation")
        await rl.check("alice", "smart_reply")
        with pytest.raises(RateLimitExceededError):
            await rl.check("alice", "translation")

    def test_configured_limits_apply_by_default(self):
        rl = RateLimiter(InMemoryRateLimitStorage())
        assert rl.limit_for("smart_reply").max_requests == 50
        assert rl.limit_for("translation").max_requests == 100
        assert rl.limit_for("unknown").window_minutes == 60

    @pytest.mark.asyncio
    async def test_storage_failure_allows_request(self):
        rl = limiter(max_requests=1, storage=DownStorage())

        assert await rl.check("alice", "translation") is None
        assert await rl.check("alice", "translation") is None
