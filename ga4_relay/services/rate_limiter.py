"""Sliding-window rate limiting keyed by client IP."""
import asyncio
import logging
import math
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Protocol

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class WindowStore(Protocol):
    async def timestamps(self, key: str, window_start: float) -> List[float]:
        """Timestamps for ``key`` newer than ``window_start``, oldest first."""

    async def add(self, key: str, timestamp: float, ttl: int) -> None:
        ...


class InMemoryWindowStore:
    """Per-process store. Keys expire once their newest timestamp leaves the window."""

    def __init__(self):
        self._windows: Dict[str, Deque[float]] = {}
        self._expires: Dict[str, float] = {}

    async def timestamps(self, key: str, window_start: float) -> List[float]:
        window = self._windows.get(key)
        if window is None:
            return []
        while window and window[0] <= window_start:
            window.popleft()
        if not window:
            self._drop(key)
            return []
        return list(window)

    async def add(self, key: str, timestamp: float, ttl: int) -> None:
        self._windows.setdefault(key, deque()).append(timestamp)
        self._expires[key] = timestamp + ttl
        self._sweep(timestamp)

    def _drop(self, key: str) -> None:
        self._windows.pop(key, None)
        self._expires.pop(key, None)

    def _sweep(self, now: float) -> None:
        for key in [k for k, exp in self._expires.items() if exp <= now]:
            self._drop(key)

    def __len__(self) -> int:
        return len(self._windows)


class RedisWindowStore:
    """Sorted set per key, score = request timestamp."""

    def __init__(self, redis_client: Redis, prefix: str = "ga4_relay:ratelimit:"):
        self._redis = redis_client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def timestamps(self, key: str, window_start: float) -> List[float]:
        rkey = self._key(key)
        await self._redis.zremrangebyscore(rkey, 0, window_start)
        members = await self._redis.zrange(rkey, 0, -1, withscores=True)
        return [float(score) for _, score in members]

    async def add(self, key: str, timestamp: float, ttl: int) -> None:
        rkey = self._key(key)
        # member must be unique, two requests can share a timestamp
        await self._redis.zadd(rkey, {f"{timestamp}:{uuid.uuid4().hex[:8]}": timestamp})
        await self._redis.expire(rkey, ttl)


class SlidingWindowRateLimiter:
    """
    Admit at most ``max_requests`` per ``window_seconds`` for each key.

    Only admitted requests are recorded, so a client that keeps hammering
    while limited does not push its own window forward.
    """

    def __init__(
        self,
        store: WindowStore | None = None,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else InMemoryWindowStore()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = asyncio.Lock()

    async def hit(self, key: str) -> RateLimitDecision:
        async with self._lock:
            now = self._clock()
            window = await self.store.timestamps(key, now - self.window_seconds)
            if len(window) >= self.max_requests:
                oldest = window[0]
                retry_after = max(1, math.ceil(oldest + self.window_seconds - now))
                logger.info("Rate limit exceeded", extra={"extra": {
                    "count": len(window), "limit": self.max_requests, "retry_after": retry_after}})
                return RateLimitDecision(False, len(window), self.max_requests, retry_after)
            await self.store.add(key, now, self.window_seconds)
            return RateLimitDecision(True, len(window) + 1, self.max_requests)


def build_rate_limiter(settings) -> SlidingWindowRateLimiter:
    store: WindowStore
    if settings.RATE_LIMIT_REDIS_URL:
        store = RedisWindowStore(Redis.from_url(settings.RATE_LIMIT_REDIS_URL))
    else:
        store = InMemoryWindowStore()
    return SlidingWindowRateLimiter(
        store,
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )
