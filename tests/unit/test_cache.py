"""
Unit tests for sonar/cache.py

Tests key generation, TTL expiry, capacity eviction, the expiry sweep and
shared upstream fetches through cached_query.
"""

import asyncio

import pytest

from sonar.cache import (
    CACHE_TTL,
    QueryCache,
    platform_cache_ttl,
    reddit_cache_ttl,
)


class FakeTime:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def timed_cache(fake_time):
    return QueryCache(max_entries=10, eviction_batch=3, clock=fake_time)


class TestGenerateKey:
    """Tests for cache key derivation."""

    def test_key_independent_of_param_order(self):
        """Test that parameter order does not change the key."""
        a = QueryCache.generate_key("reddit:search", {"terms": ["acme"], "limit": 100})
        b = QueryCache.generate_key("reddit:search", {"limit": 100, "terms": ["acme"]})
        assert a == b

    def test_key_includes_prefix(self):
        """Test that the same params under different prefixes do not collide."""
        params = {"terms": ["acme"]}
        a = QueryCache.generate_key("reddit:search", params)
        b = QueryCache.generate_key("hackernews:search", params)
        assert a != b
        assert a.startswith("reddit:search:")


class TestTTL:
    """Tests for expiry."""

    def test_get_within_ttl(self, timed_cache, fake_time):
        """Test values are returned before expiry."""
        timed_cache.set("k", [1, 2], ttl=60)
        fake_time.now += 59
        assert timed_cache.get("k") == [1, 2]

    def test_get_after_ttl_is_miss(self, timed_cache, fake_time):
        """Test values are gone at expiry."""
        timed_cache.set("k", [1, 2], ttl=60)
        fake_time.now += 60
        assert timed_cache.get("k") is None
        assert "k" not in timed_cache._entries

    def test_has_respects_ttl(self, timed_cache, fake_time):
        """Test has() reports expired entries as absent."""
        timed_cache.set("k", "v", ttl=10)
        assert timed_cache.has("k") is True
        fake_time.now += 11
        assert timed_cache.has("k") is False

    def test_platform_ttls(self):
        """Test TTLs for each source category."""
        assert platform_cache_ttl("reddit") == CACHE_TTL["reddit_search"]
        assert platform_cache_ttl("hackernews") == CACHE_TTL["hackernews"]
        assert platform_cache_ttl("trustpilot") == CACHE_TTL["reviews"]
        assert platform_cache_ttl("quora") == CACHE_TTL["default"]

    def test_reddit_ttl_by_activity(self):
        """Test busy subreddits get a shorter TTL."""
        assert reddit_cache_ttl("AskReddit") == CACHE_TTL["reddit_hot"]
        assert reddit_cache_ttl("obscurehobby") == CACHE_TTL["reddit_search"]


class TestCapacity:
    """Tests for eviction at capacity."""

    def test_evicts_oldest_batch(self, timed_cache, fake_time):
        """Test that inserting past capacity evicts the oldest entries first."""
        for i in range(10):
            timed_cache.set(f"k{i}", i, ttl=3600)
            fake_time.now += 1

        timed_cache.set("new", "x", ttl=3600)

        assert len(timed_cache) == 8
        for i in range(3):
            assert not timed_cache.has(f"k{i}")
        assert timed_cache.has("k3")
        assert timed_cache.get("new") == "x"

    def test_overwrite_does_not_evict(self, timed_cache):
        """Test that replacing an existing key at capacity evicts nothing."""
        for i in range(10):
            timed_cache.set(f"k{i}", i)
        timed_cache.set("k5", "updated")
        assert len(timed_cache) == 10
        assert timed_cache.get("k5") == "updated"


class TestSweepAndClear:
    """Tests for sweeping, invalidation and clear()."""

    def test_sweep_removes_only_expired(self, timed_cache, fake_time):
        """Test that the sweep drops expired entries and keeps live ones."""
        timed_cache.set("short", 1, ttl=10)
        timed_cache.set("long", 2, ttl=1000)
        fake_time.now += 20

        assert timed_cache.sweep_expired() == 1
        assert timed_cache.entry("short") is None
        assert timed_cache.entry("long") is not None

    def test_invalidate_prefix(self, timed_cache):
        """Test prefix invalidation."""
        timed_cache.set("reddit:search:a", 1)
        timed_cache.set("reddit:search:b", 2)
        timed_cache.set("hackernews:search:a", 3)

        assert timed_cache.invalidate("reddit:") == 2
        assert timed_cache.has("hackernews:search:a")

    def test_clear_resets_counters(self, timed_cache):
        """Test clear() drops entries and hit statistics."""
        timed_cache.set("k", 1)
        timed_cache.get("k")
        timed_cache.get("missing")

        timed_cache.clear()
        stats = timed_cache.stats()
        assert (stats.hits, stats.misses, stats.entries) == (0, 0, 0)

    def test_stats_hit_rate(self, timed_cache):
        """Test hit rate calculation."""
        timed_cache.set("k", 1)
        timed_cache.get("k")
        timed_cache.get("k")
        timed_cache.get("missing")

        stats = timed_cache.stats()
        assert stats.hits == 2
        assert stats.misses == 1
        assert stats.to_dict()["hitRate"] == pytest.approx(0.6667, abs=1e-4)


class TestCachedQuery:
    """Tests for cached_query()."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache):
        """Test that the second identical query is served from cache."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return ["post"]

        first, hit1 = await cache.cached_query("reddit:search", {"terms": ["acme"]}, fetch, ttl=60)
        second, hit2 = await cache.cached_query("reddit:search", {"terms": ["acme"]}, fetch, ttl=60)

        assert first == second == ["post"]
        assert (hit1, hit2) == (False, True)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_refetch_after_ttl(self, timed_cache, fake_time):
        """Test an expired entry sends the next query upstream again."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return [f"post-{calls}"]

        await timed_cache.cached_query("hackernews:search", {"terms": ["acme"]}, fetch, ttl=60)
        fake_time.now += 61
        data, hit = await timed_cache.cached_query("hackernews:search", {"terms": ["acme"]}, fetch, ttl=60)

        assert calls == 2
        assert hit is False
        assert data == ["post-2"]

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_fetch(self, cache):
        """Test that concurrent identical queries make one upstream call."""
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return ["post"]

        results = await asyncio.gather(
            *(cache.cached_query("hackernews:search", {"terms": ["acme"]}, fetch) for _ in range(5))
        )

        assert calls == 1
        assert all(data == ["post"] for data, _ in results)
        assert sum(1 for _, hit in results if not hit) == 1

    @pytest.mark.asyncio
    async def test_failed_fetch_not_cached(self, cache):
        """Test that an upstream error is raised and not stored."""

        async def failing():
            raise RuntimeError("upstream down")

        with pytest.raises(RuntimeError):
            await cache.cached_query("reddit:search", {"terms": ["acme"]}, failing)

        async def working():
            return ["ok"]

        data, hit = await cache.cached_query("reddit:search", {"terms": ["acme"]}, working)
        assert data == ["ok"]
        assert hit is False

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, cache):
        """Test the sweep task lifecycle."""
        cache.start()
        assert cache._sweep_task is not None
        await cache.shutdown()
        assert cache._sweep_task is None
