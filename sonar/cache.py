"""
Query Cache.

In-memory TTL cache for upstream platform queries. Monitors that watch
overlapping keywords share one upstream call per TTL window because keys are
derived from the normalized query parameters, not from the monitor.

The cache is advisory: a miss, a restart or a cleared cache only costs an
extra upstream request, never correctness.
"""

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger("sonar.cache")

HOUR = 60 * 60

# TTLs in seconds, by source category
CACHE_TTL = {
    "reddit_search": 2 * HOUR,
    "reddit_hot": 1 * HOUR,
    "reddit_niche": 4 * HOUR,
    "producthunt": 4 * HOUR,
    "hackernews": 2 * HOUR,
    "reviews": 6 * HOUR,
    "default": 2 * HOUR,
}

REVIEW_PLATFORMS = {"googlereviews", "trustpilot", "appstore", "playstore"}

# Busy subreddits get fresher data
HIGH_ACTIVITY_SUBREDDITS = {
    "askreddit", "news", "worldnews", "technology", "programming",
    "startups", "entrepreneur", "saas", "webdev", "javascript",
    "reactjs", "nextjs", "marketing", "smallbusiness", "business",
}

_MISSING = object()


def platform_cache_ttl(platform: str) -> float:
    """Default TTL for a platform's queries."""
    if platform == "reddit":
        return CACHE_TTL["reddit_search"]
    if platform == "hackernews":
        return CACHE_TTL["hackernews"]
    if platform == "producthunt":
        return CACHE_TTL["producthunt"]
    if platform in REVIEW_PLATFORMS:
        return CACHE_TTL["reviews"]
    return CACHE_TTL["default"]


def reddit_cache_ttl(subreddit: str) -> float:
    if subreddit.lower() in HIGH_ACTIVITY_SUBREDDITS:
        return CACHE_TTL["reddit_hot"]
    return CACHE_TTL["reddit_search"]


@dataclass
class CacheEntry:
    data: Any
    created_at: float
    expires_at: float
    hit_count: int = 0


@dataclass
class CacheStats:
    hits: int
    misses: int
    entries: int

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "entries": self.entries,
            "hitRate": round(self.hit_rate, 4),
        }


class QueryCache:
    """
    Process-wide TTL cache with a background expiry sweep.

    Construct one per process (see sonar.service) and pass it to whoever
    needs it. start() launches the sweep, shutdown() stops it and clear()
    drops all entries and counters.
    """

    def __init__(
        self,
        max_entries: int = 10000,
        sweep_interval: float = 300,
        eviction_batch: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self.eviction_batch = eviction_batch
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        # Guards _entries and the counters for callers outside the event loop
        self._lock = threading.Lock()
        # Concurrent misses on the same key await one shared fetch
        self._inflight: dict[str, asyncio.Future] = {}
        self._sweep_task: asyncio.Task | None = None

    @staticmethod
    def generate_key(prefix: str, params: dict[str, Any]) -> str:
        """Stable key for a query. Parameter order does not matter."""
        normalized = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
        digest = hashlib.md5(normalized.encode("utf-8")).hexdigest()
        return f"{prefix}:{digest}"

    def _lookup(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return _MISSING
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                self._misses += 1
                return _MISSING
            entry.hit_count += 1
            self._hits += 1
            return entry.data

    def get(self, key: str) -> Any:
        """Return the cached value, or None on miss or expiry."""
        value = self._lookup(key)
        return None if value is _MISSING else value

    def set(self, key: str, data: Any, ttl: float | None = None) -> None:
        ttl = CACHE_TTL["default"] if ttl is None else ttl
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict_oldest()
            now = self._clock()
            self._entries[key] = CacheEntry(data=data, created_at=now, expires_at=now + ttl)

    def has(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return False
            return True

    def entry(self, key: str) -> CacheEntry | None:
        """Raw entry access, without touching hit counters."""
        with self._lock:
            return self._entries.get(key)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate(self, prefix: str) -> int:
        """Drop every entry whose key starts with prefix."""
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
        logger.info(f"Invalidated {len(keys)} cache entries matching '{prefix}'")
        return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Query cache cleared")

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(hits=self._hits, misses=self._misses, entries=len(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_oldest(self) -> None:
        """Evict the oldest-created entries regardless of remaining TTL. Caller holds the lock."""
        oldest = sorted(self._entries.items(), key=lambda item: item[1].created_at)
        count = min(self.eviction_batch, len(oldest))
        for key, _ in oldest[:count]:
            del self._entries[key]
        logger.debug(f"Cache at capacity, evicted {count} oldest entries")

    def sweep_expired(self) -> int:
        """Remove all expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    async def cached_query(
        self,
        prefix: str,
        params: dict[str, Any],
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> tuple[Any, bool]:
        """
        Serve a query from cache or fetch and store it.

        Args:
            prefix: Namespace for the key, typically "<platform>:<query kind>".
            params: Query parameters. Key order is irrelevant.
            fetch_fn: Coroutine factory performing the upstream call.
            ttl: Seconds the result stays valid.

        Returns:
            (data, cache_hit). cache_hit is True when fetch_fn was not invoked
            by this call.
        """
        key = self.generate_key(prefix, params)

        cached = self._lookup(key)
        if cached is not _MISSING:
            logger.debug(f"Cache HIT: {prefix} (key: {key[-8:]})")
            return cached, True

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"Cache JOIN: {prefix} (key: {key[-8:]})")
            return await asyncio.shield(pending), True

        logger.debug(f"Cache MISS: {prefix} (key: {key[-8:]})")
        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            data = await fetch_fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            # Failed fetches are never cached; waiters see the same error
            future.set_exception(e)
            future.exception()
            raise
        else:
            self.set(key, data, ttl)
            future.set_result(data)
            return data, False
        finally:
            self._inflight.pop(key, None)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep_expired()

    def start(self) -> None:
        """Launch the background expiry sweep on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                f"Query cache started (max_entries={self.max_entries}, sweep every {self.sweep_interval}s)"
            )

    async def shutdown(self) -> None:
        """Stop the sweep task. Entries are kept until clear()."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Query cache stopped")
