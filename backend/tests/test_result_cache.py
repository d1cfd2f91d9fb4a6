"""Tests for the two-tier AI result cache."""

import asyncio

import pytest

from chatsync.ai.cache import MemoryResultCache, ResultCache, cache_key
from chatsync.store import InMemoryCacheStorage


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


class BrokenStorage(InMemoryCacheStorage):
    """Storage whose reads and writes always fail."""

    async def get(self, key):
        raise ConnectionError("cache store down")

    async def set(self, key, value, timestamp):
        raise ConnectionError("cache store down")


def counting(value):
    calls = []

    async def compute():
        calls.append(1)
        return dict(value)

    return compute, calls


class TestCacheKey:
    """Test key derivation."""

    def test_same_fields_same_key(self):
        a = cache_key("translation", text="Hello", target_language="es")
        b = cache_key("translation", target_language="es", text="Hello")
        assert a == b
        assert len(a) == 64

    def test_fields_and_operation_matter(self):
        base = cache_key("translation", text="Hello", target_language="es")
        assert base != cache_key("translation", text="Hello", target_language="fr")
        assert base != cache_key("translation", text="hello", target_language="es")
        assert base != cache_key("formality", text="Hello", target_language="es")

    def test_none_hashes_as_empty(self):
        assert cache_key("op", source=None) == cache_key("op", source="")


class TestResultCache:
    """Test the durable tier."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self):
        cache = ResultCache(InMemoryCacheStorage())
        compute, calls = counting({"translated_text": "Hola"})

        first = await cache.get_or_compute("k", 60, compute)
        second = await cache.get_or_compute("k", 60, compute)

        assert first == ({"translated_text": "Hola"}, False)
        assert second == ({"translated_text": "Hola"}, True)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_deleted_and_recomputed(self):
        clock = FakeClock()
        storage = InMemoryCacheStorage()
        cache = ResultCache(storage, clock=clock)
        compute, calls = counting({"v": 1})

        await cache.get_or_compute("k", 60, compute)
        clock.advance(59)
        assert (await cache.get_or_compute("k", 60, compute))[1] is True

        clock.advance(1)
        value, cached = await cache.get_or_compute("k", 60, compute)

        assert cached is False
        assert len(calls) == 2
        # rewritten with a fresh timestamp
        assert (await storage.get("k"))[1] == clock.now

    @pytest.mark.asyncio
    async def test_storage_failure_is_a_miss(self):
        cache = ResultCache(BrokenStorage())
        compute, calls = counting({"v": 1})

        assert await cache.get_or_compute("k", 60, compute) == ({"v": 1}, False)
        assert await cache.get_or_compute("k", 60, compute) == ({"v": 1}, False)
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_compute_errors_are_not_cached(self):
        storage = InMemoryCacheStorage()
        cache = ResultCache(storage)

        async def failing():
            raise ValueError("service down")

        with pytest.raises(ValueError):
            await cache.get_or_compute("k", 60, failing)
        assert len(storage) == 0


class TestMemoryTier:
    """Test the in-process tier in front of storage."""

    @pytest.mark.asyncio
    async def test_memory_hit_skips_storage(self):
        storage = InMemoryCacheStorage()
        cache = ResultCache(storage, memory=MemoryResultCache(ttl_seconds=60, max_entries=10))
        compute, calls = counting({"v": 1})

        await cache.get_or_compute("k", 600, compute)
        await storage.delete("k")
        value, cached = await cache.get_or_compute("k", 600, compute)

        assert value == {"v": 1}
        assert cached is True
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_compute_once(self):
        cache = ResultCache(InMemoryCacheStorage(), memory=MemoryResultCache(ttl_seconds=60))
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"v": 1}

        results = await asyncio.gather(*(cache.get_or_compute("k", 60, slow) for _ in range(5)))

        assert len(calls) == 1
        assert [cached for _, cached in results] == [False, True, True, True, True]

    @pytest.mark.asyncio
    async def test_distinct_keys_compute_in_parallel(self):
        memory = MemoryResultCache(ttl_seconds=60)
        both_started = asyncio.Event()
        started = []

        def waiting(name):
            async def compute():
                started.append(name)
                if len(started) == 2:
                    both_started.set()
                await both_started.wait()
                return {"k": name}, False

            return compute

        results = await asyncio.wait_for(
            asyncio.gather(
                memory.get_or_compute("a", waiting("a")),
                memory.get_or_compute("b", waiting("b")),
            ),
            timeout=1.0,
        )

        assert results == [({"k": "a"}, False), ({"k": "b"}, False)]

    @pytest.mark.asyncio
    async def test_hit_does_not_wait_for_a_slow_miss(self):
        memory = MemoryResultCache(ttl_seconds=60)
        release = asyncio.Event()

        async def fast():
            return {"v": "fast"}, False

        async def slow():
            await release.wait()
            return {"v": "slow"}, False

        await memory.get_or_compute("hot", fast)
        miss = asyncio.create_task(memory.get_or_compute("cold", slow))
        await asyncio.sleep(0)

        hit = await asyncio.wait_for(memory.get_or_compute("hot", fast), timeout=1.0)

        assert hit == ({"v": "fast"}, True)
        assert not miss.done()
        release.set()
        assert await miss == ({"v": "slow"}, False)

    @pytest.mark.asyncio
    async def test_joined_callers_share_the_error(self):
        memory = MemoryResultCache(ttl_seconds=60)
        calls = []

        async def failing():
            calls.append(1)
            await asyncio.sleep(0.01)
            raise ConnectionError("language service down")

        results = await asyncio.gather(
            *(memory.get_or_compute("k", failing) for _ in range(3)), return_exceptions=True
        )

        assert len(calls) == 1
        assert all(isinstance(r, ConnectionError) for r in results)
        assert len(memory) == 0

    @pytest.mark.asyncio
    async def test_waiter_takes_over_a_cancelled_computation(self):
        memory = MemoryResultCache(ttl_seconds=60)
        calls = []

        async def compute():
            calls.append(1)
            await asyncio.sleep(0.05)
            return {"v": len(calls)}, False

        first = asyncio.create_task(memory.get_or_compute("k", compute))
        await asyncio.sleep(0)
        second = asyncio.create_task(memory.get_or_compute("k", compute))
        await asyncio.sleep(0)
        first.cancel()

        assert await second == ({"v": 2}, False)
        assert len(calls) == 2
        with pytest.raises(asyncio.CancelledError):
            await first

    @pytest.mark.asyncio
    async def test_entry_ttl_is_capped_by_operation_ttl(self):
        clock = FakeClock()
        memory = MemoryResultCache(ttl_seconds=600, max_entries=10, clock=clock)
        cache = ResultCache(InMemoryCacheStorage(), memory=memory, clock=clock)
        compute, calls = counting({"v": 1})

        await cache.get_or_compute("k", 30, compute)
        clock.advance(31)
        value, cached = await cache.get_or_compute("k", 30, compute)

        assert cached is False
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_bounded_size(self):
        clock = FakeClock()
        memory = MemoryResultCache(ttl_seconds=60, max_entries=3, clock=clock)

        for i in range(5):
            clock.advance(1)

            async def compute(i=i):
                return {"i": i}, False

            await memory.get_or_compute(f"k{i}", compute)

        assert len(memory) == 3
        # the soonest-expiring (oldest) entries were dropped
        assert set(memory._entries) == {"k2", "k3", "k4"}

    @pytest.mark.asyncio
    async def test_clear(self):
        memory = MemoryResultCache(ttl_seconds=60)

        async def compute():
            return {"v": 1}, False

        await memory.get_or_compute("k", compute)
        await memory.clear()

        assert len(memory) == 0
