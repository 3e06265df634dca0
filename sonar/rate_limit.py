"""
Request rate limiting.

Fixed-window counters keyed by (user, operation class). Windows are aligned
to multiples of the window length, so every counter resets to zero exactly at
the boundary rather than sliding.

Counters live in Redis when REDIS_URL is configured. Any Redis error drops
the call to an in-process counter: limits stay enforced per instance,
trading cross-instance accuracy for availability.
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger("sonar.rate_limit")

# Requests per window (default window: 60 seconds)
DEFAULT_LIMITS = {
    "read": 60,
    "write": 20,
    "export": 5,
}


class CounterBackend(ABC):
    """Atomic increment-and-read counters with absolute expiry."""

    @abstractmethod
    async def incr(self, key: str, amount: int, expires_at: float) -> int:
        """Add amount to key and return the new value."""

    @abstractmethod
    async def get(self, key: str) -> int:
        """Current value of key, 0 when absent or expired."""

    async def close(self) -> None:
        pass


class MemoryCounters(CounterBackend):
    """In-process counters. Expired keys are purged once the map grows large."""

    def __init__(self, max_keys: int = 10000, clock: Callable[[], float] = time.time):
        self.max_keys = max_keys
        self._clock = clock
        self._values: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def _purge_expired(self, now: float) -> None:
        expired = [k for k, (_, exp) in self._values.items() if exp <= now]
        for key in expired:
            del self._values[key]

    async def incr(self, key: str, amount: int, expires_at: float) -> int:
        now = self._clock()
        with self._lock:
            if len(self._values) > self.max_keys:
                self._purge_expired(now)
            value, expiry = self._values.get(key, (0, expires_at))
            if expiry <= now:
                value, expiry = 0, expires_at
            value += amount
            self._values[key] = (value, expiry)
            return value

    async def get(self, key: str) -> int:
        with self._lock:
            value, expiry = self._values.get(key, (0, 0.0))
            if expiry <= self._clock():
                return 0
            return value

    def clear(self) -> None:
        with self._lock:
            self._values.clear()


class RedisCounters(CounterBackend):
    """Counters shared across instances through Redis INCRBY + EXPIREAT."""

    def __init__(self, url: str, key_prefix: str = "sonar:"):
        self.url = url
        self.key_prefix = key_prefix
        self._redis: redis.Redis | None = None

    def _get_redis(self) -> redis.Redis:
        """Get or create the Redis client."""
        if self._redis is None:
            self._redis = redis.from_url(self.url, decode_responses=True)
        return self._redis

    async def incr(self, key: str, amount: int, expires_at: float) -> int:
        client = self._get_redis()
        full_key = f"{self.key_prefix}{key}"
        async with client.pipeline(transaction=True) as pipe:
            pipe.incrby(full_key, amount)
            pipe.expireat(full_key, int(math.ceil(expires_at)))
            value, _ = await pipe.execute()
        return int(value)

    async def get(self, key: str) -> int:
        value = await self._get_redis().get(f"{self.key_prefix}{key}")
        return int(value) if value is not None else 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class FallbackCounters(CounterBackend):
    """Primary (shared) backend that degrades to a local one on errors."""

    def __init__(self, primary: CounterBackend, fallback: CounterBackend):
        self.primary = primary
        self.fallback = fallback

    async def incr(self, key: str, amount: int, expires_at: float) -> int:
        try:
            return await self.primary.incr(key, amount, expires_at)
        except (RedisError, OSError) as e:
            logger.warning(f"Shared counter unavailable, using in-process fallback: {e}")
            return await self.fallback.incr(key, amount, expires_at)

    async def get(self, key: str) -> int:
        try:
            return await self.primary.get(key)
        except (RedisError, OSError) as e:
            logger.warning(f"Shared counter unavailable, using in-process fallback: {e}")
            return await self.fallback.get(key)

    async def close(self) -> None:
        await self.primary.close()
        await self.fallback.close()


def create_counter_backend(redis_url: str = "", key_prefix: str = "sonar:") -> CounterBackend:
    """Redis-backed counters with local fallback, or local counters when no URL is set."""
    if redis_url:
        logger.info("Using Redis counters with in-process fallback")
        return FallbackCounters(RedisCounters(redis_url, key_prefix), MemoryCounters())
    logger.info("Using in-process counters")
    return MemoryCounters()


def window_bounds(now: float, window_seconds: int) -> tuple[int, int]:
    """Start and end of the aligned fixed window containing now."""
    start = int(now // window_seconds) * window_seconds
    return start, start + window_seconds


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


class RateLimiter:
    """Per-user, per-operation-class fixed-window limiter."""

    def __init__(
        self,
        counters: CounterBackend,
        limits: dict[str, int] | None = None,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.counters = counters
        self.limits = dict(limits or DEFAULT_LIMITS)
        self.window_seconds = window_seconds
        self._clock = clock

    async def check(self, user_id: str, operation: str) -> RateLimitResult:
        """
        Count one request and report whether it is within the limit.

        Raises:
            ValueError: If operation is not a known operation class.
        """
        if operation not in self.limits:
            raise ValueError(f"Unknown operation class: {operation}")
        limit = self.limits[operation]

        now = self._clock()
        start, reset_at = window_bounds(now, self.window_seconds)
        key = f"ratelimit:{operation}:{user_id}:{start}"
        count = await self.counters.incr(key, 1, reset_at)

        if count > limit:
            retry_after = max(1, math.ceil(reset_at - now))
            logger.info(f"Rate limit hit: user={user_id} op={operation} ({count}/{limit}), retry in {retry_after}s")
            return RateLimitResult(False, limit, 0, reset_at, retry_after)

        return RateLimitResult(True, limit, limit - count, reset_at)
