"""Global throughput limiting for delivery task starts.

A limiter caps how many delivery tasks may *start* per window, across every
consumer that shares it. ``acquire()`` waits until a start slot is free.

- InMemoryThroughputLimiter: sliding window in one process.
- RedisThroughputLimiter: sliding window in a Redis sorted set, shared by all
  worker processes and updated by an atomic Lua script.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque

from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError

from courier.logging import get_logger

logger = get_logger(__name__)


class ThroughputLimiter(ABC):
    """Abstract base class for start-rate limiters."""

    @abstractmethod
    async def acquire(self) -> None:
        """Wait until one more task start fits in the current window."""
        ...

    async def close(self) -> None:  # noqa: B027
        """Release limiter resources."""


class InMemoryThroughputLimiter(ThroughputLimiter):
    """Sliding-window limiter for a single process.

    Waiters are served in arrival order; the lock is held while sleeping
    so a later caller cannot overtake an earlier one.
    """

    def __init__(self, max_starts: int, window_seconds: float = 1.0) -> None:
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                window_start = now - self.window_seconds
                while self._starts and self._starts[0] <= window_start:
                    self._starts.popleft()

                if len(self._starts) < self.max_starts:
                    self._starts.append(now)
                    return

                wait = self._starts[0] + self.window_seconds - now
                logger.debug("throughput_limit_wait", wait_seconds=round(wait, 4))
                await asyncio.sleep(max(wait, 0.0))

    @property
    def current_starts(self) -> int:
        """Starts recorded in the current window."""
        cutoff = time.monotonic() - self.window_seconds
        return sum(1 for ts in self._starts if ts > cutoff)


class RedisThroughputLimiter(ThroughputLimiter):
    """Redis-backed sliding-window limiter shared by every worker process.

    Each start is a member of a sorted set scored by its timestamp in
    milliseconds. The Lua script trims the window, checks the count, and
    records the start in one atomic step; when the window is full it returns
    how long until the oldest start expires.

    If Redis is unreachable the limiter lets the start through and logs a
    warning; deliveries keep flowing without the global cap.
    """

    _ACQUIRE_SCRIPT = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local now_ms = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Remove starts outside the window
    redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)

    local count = redis.call('ZCARD', key)
    if count >= limit then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local wait_ms = window_ms
        if oldest[2] then
            wait_ms = tonumber(oldest[2]) + window_ms - now_ms
        end
        return {0, wait_ms}
    end

    redis.call('ZADD', key, now_ms, member)
    redis.call('PEXPIRE', key, window_ms * 2)
    return {1, 0}
    """

    def __init__(
        self,
        redis: Redis,
        max_starts: int,
        window_seconds: float = 1.0,
        key: str = "courier:throughput",
    ) -> None:
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        self._redis = redis
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self.key = key
        self._script_sha: str | None = None

    @classmethod
    def from_url(
        cls, redis_url: str, max_starts: int, window_seconds: float = 1.0
    ) -> RedisThroughputLimiter:
        """Create a limiter with its own Redis connection."""
        return cls(Redis.from_url(redis_url), max_starts, window_seconds)

    async def _run_script(self, now_ms: int, member: str) -> list[int]:
        window_ms = int(self.window_seconds * 1000)
        args = (self.max_starts, window_ms, now_ms, member)

        if self._script_sha is None:
            self._script_sha = str(await self._redis.script_load(self._ACQUIRE_SCRIPT))
        try:
            result = await self._redis.evalsha(self._script_sha, 1, self.key, *args)
        except NoScriptError:
            # Script cache was flushed, reload it
            self._script_sha = str(await self._redis.script_load(self._ACQUIRE_SCRIPT))
            result = await self._redis.evalsha(self._script_sha, 1, self.key, *args)

        return [int(value) for value in result]

    async def acquire(self) -> None:
        member = uuid.uuid4().hex
        while True:
            now_ms = int(time.time() * 1000)
            try:
                allowed, wait_ms = await self._run_script(now_ms, member)
            except RedisError as e:
                logger.warning("throughput_limiter_unavailable", error=str(e), backend="redis")
                return

            if allowed:
                return

            logger.debug("throughput_limit_wait", wait_seconds=wait_ms / 1000, backend="redis")
            await asyncio.sleep(max(wait_ms, 1) / 1000)

    async def close(self) -> None:
        await self._redis.aclose()


__all__ = [
    "InMemoryThroughputLimiter",
    "RedisThroughputLimiter",
    "ThroughputLimiter",
]
