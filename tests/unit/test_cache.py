"""Tests for the bounded TTL cache."""

import asyncio

import pytest

from evidentia.lib.cache import TTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.unit
class TestTTLCache:
    """Capacity, expiry and statistics."""

    @pytest.mark.asyncio
    async def test_get_returns_stored_value(self):
        cache = TTLCache(max_entries=2)
        await cache.set("a", 1)

        assert await cache.get("a") == 1
        assert await cache.get("missing") is None

        stats = cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.hit_rate == 0.5

    @pytest.mark.asyncio
    async def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = TTLCache(max_entries=2, ttl_seconds=10, clock=clock)
        await cache.set("a", 1)

        clock.now = 9.9
        assert await cache.get("a") == 1

        clock.now = 10.0
        assert await cache.get("a") is None
        assert len(cache) == 0
        assert cache.stats().expirations == 1

    @pytest.mark.asyncio
    async def test_oldest_entry_evicted_when_full(self):
        cache = TTLCache(max_entries=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("c", 3)

        assert await cache.get("a") is None
        assert await cache.get("b") == 2
        assert await cache.get("c") == 3
        assert cache.stats().evictions == 1

    @pytest.mark.asyncio
    async def test_expired_entries_purged_before_evicting_live_ones(self):
        clock = FakeClock()
        cache = TTLCache(max_entries=2, ttl_seconds=5, clock=clock)
        await cache.set("old", 1)
        clock.now = 3
        await cache.set("live", 2)

        clock.now = 6
        await cache.set("new", 3)

        assert await cache.get("live") == 2
        assert await cache.get("new") == 3
        stats = cache.stats()
        assert stats.evictions == 0
        assert stats.expirations == 1

    @pytest.mark.asyncio
    async def test_replacing_key_does_not_evict(self):
        cache = TTLCache(max_entries=2)
        await cache.set("a", 1)
        await cache.set("b", 2)
        await cache.set("a", 10)

        assert await cache.get("a") == 10
        assert await cache.get("b") == 2
        assert cache.stats().evictions == 0

    @pytest.mark.asyncio
    async def test_concurrent_writers_never_exceed_capacity(self):
        cache = TTLCache(max_entries=5)

        await asyncio.gather(*(cache.set(f"key-{i % 8}", i) for i in range(50)))

        assert len(cache) <= 5

    @pytest.mark.asyncio
    async def test_delete_and_clear(self):
        cache = TTLCache()
        await cache.set("a", 1)
        await cache.set("b", 2)

        assert await cache.delete("a") is True
        assert await cache.delete("a") is False

        await cache.clear()
        assert len(cache) == 0

    def test_rejects_zero_capacity(self):
        with pytest.raises(ValueError):
            TTLCache(max_entries=0)
