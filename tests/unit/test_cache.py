"""
Unit Tests - In-Process Cache
"""
import asyncio
import pytest

from rollup_analytics.cache import CacheManager


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestCacheManager:
    """Tests for CacheManager"""

    async def test_concurrent_misses_share_one_load(self):
        cache = CacheManager("test")
        calls = 0
        release = asyncio.Event()

        async def loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return {"pageview", "purchase"}

        waiters = [asyncio.create_task(cache.get_or_load("main", loader)) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*waiters)

        assert calls == 1
        assert all(result == {"pageview", "purchase"} for result in results)

    async def test_entries_expire(self):
        clock = FakeClock()
        cache = CacheManager("test", default_ttl=60, clock=clock)
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            return calls

        assert await cache.get_or_load("key", loader) == 1
        clock.now = 59
        assert await cache.get_or_load("key", loader) == 1
        clock.now = 60
        assert await cache.get_or_load("key", loader) == 2

    async def test_failures_are_not_cached(self):
        cache = CacheManager("test")
        attempts = 0

        async def loader():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise LookupError("missing")
            return "found"

        with pytest.raises(LookupError):
            await cache.get_or_load("key", loader)
        assert await cache.get_or_load("key", loader) == "found"

    async def test_waiters_receive_the_loader_failure(self):
        cache = CacheManager("test")
        release = asyncio.Event()

        async def loader():
            await release.wait()
            raise LookupError("missing")

        first = asyncio.create_task(cache.get_or_load("key", loader))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_load("key", loader))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second, return_exceptions=True)

        assert all(isinstance(result, LookupError) for result in results)

    async def test_cancelled_caller_does_not_cancel_other_waiters(self):
        cache = CacheManager("test")
        release = asyncio.Event()
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            await release.wait()
            return 1

        first = asyncio.create_task(cache.get_or_load("key", loader))
        await asyncio.sleep(0)
        second = asyncio.create_task(cache.get_or_load("key", loader))
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await second == 1
        assert first.cancelled()
        assert calls == 1
        assert cache.get("key") == 1

    def test_set_get_delete(self):
        clock = FakeClock()
        cache = CacheManager("test", default_ttl=10, clock=clock)

        cache.set("a", 1)
        cache.set("b", 2, ttl=100)

        assert cache.get("a") == 1
        assert cache.delete("a")
        assert cache.get("a") is None
        assert not cache.delete("a")

        clock.now = 50
        assert cache.get("b") == 2
        assert cache.invalidate_all() == 1
        assert cache.get("b") is None
