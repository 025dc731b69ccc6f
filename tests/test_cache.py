"""Tests for the in-process TTL cache."""

import asyncio

import pytest

from chainpulse.app.core.cache import CacheEntry, TTLCache


class TestCacheEntry:
    """Tests for CacheEntry expiry."""

    def test_valid_before_ttl(self):
        """Entry is valid while now - stored_at < ttl."""
        entry = CacheEntry(value="5", stored_at=100.0, ttl=300.0)
        assert not entry.is_expired(399.999)

    def test_expired_at_ttl(self):
        """Entry expires exactly when the TTL has elapsed."""
        entry = CacheEntry(value="5", stored_at=100.0, ttl=300.0)
        assert entry.is_expired(400.0)


class TestTTLCache:
    """Tests for TTLCache get/set/sweep."""

    def test_set_and_get(self, clock):
        """A value is readable right after it was stored."""
        cache = TTLCache(clock=clock)
        cache.set("gasPrice", "5")
        assert cache.get("gasPrice") == "5"

    def test_get_missing_key(self, clock):
        """Missing keys return None."""
        cache = TTLCache(clock=clock)
        assert cache.get("nope") is None

    def test_gas_price_expires_after_ttl(self, clock):
        """Value is served just before the TTL and gone just after."""
        cache = TTLCache(ttl_ms=300_000, clock=clock)
        cache.set("gasPrice", "5")

        clock.advance(299.999)
        assert cache.get("gasPrice") == "5"

        clock.advance(0.002)
        assert cache.get("gasPrice") is None

    def test_expired_read_removes_entry(self, clock):
        """Reading an expired entry drops it without a sweep."""
        cache = TTLCache(ttl_ms=1000, clock=clock)
        cache.set("k", "v")
        clock.advance(2)

        assert len(cache) == 1
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_per_entry_ttl(self, clock):
        """A per-entry TTL overrides the default."""
        cache = TTLCache(ttl_ms=300_000, clock=clock)
        cache.set("short", "a", ttl=10)
        cache.set("long", "b")

        clock.advance(11)
        assert cache.get("short") is None
        assert cache.get("long") == "b"

    def test_set_replaces_and_restarts_ttl(self, clock):
        """Re-setting a key replaces the value and its timestamp."""
        cache = TTLCache(ttl_ms=10_000, clock=clock)
        cache.set("k", "old")
        clock.advance(8)
        cache.set("k", "new")
        clock.advance(8)
        assert cache.get("k") == "new"

    def test_sweep_removes_only_expired(self, clock):
        """Sweep drops expired entries and reports how many."""
        cache = TTLCache(ttl_ms=10_000, clock=clock)
        cache.set("old", 1)
        clock.advance(5)
        cache.set("fresh", 2)
        clock.advance(6)

        assert cache.sweep() == 1
        assert "old" not in cache
        assert "fresh" in cache

    def test_clear(self, clock):
        """Clear empties the cache."""
        cache = TTLCache(clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.clear()
        assert len(cache) == 0

    def test_ttl_property_in_seconds(self):
        """TTL is configured in milliseconds and reported in seconds."""
        assert TTLCache(ttl_ms=300_000).ttl == 300.0

    def test_rejects_non_positive_ttl(self):
        """A zero TTL is rejected."""
        with pytest.raises(ValueError):
            TTLCache(ttl_ms=0)


class TestCacheSweeper:
    """Tests for the background sweep task."""

    @pytest.mark.asyncio
    async def test_background_sweep(self, clock):
        """The sweep task removes expired entries that are never read."""
        cache = TTLCache(ttl_ms=1000, sweep_interval=0.01, clock=clock)
        cache.set("k", "v")
        clock.advance(5)

        await cache.start()
        try:
            await asyncio.sleep(0.05)
            assert len(cache) == 0
        finally:
            await cache.stop()

    @pytest.mark.asyncio
    async def test_start_stop(self):
        """Start and stop toggle the running flag and are idempotent."""
        cache = TTLCache(sweep_interval=60)
        await cache.start()
        await cache.start()
        assert cache.running

        await cache.stop()
        await cache.stop()
        assert not cache.running
