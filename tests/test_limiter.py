"""Tests for task-start throughput limiters."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoScriptError

from courier.queue import InMemoryThroughputLimiter, RedisThroughputLimiter


class TestInMemoryThroughputLimiter:
    """Tests for the single-process sliding window."""

    def test_rejects_zero_limit(self):
        with pytest.raises(ValueError):
            InMemoryThroughputLimiter(0)

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_immediately(self):
        limiter = InMemoryThroughputLimiter(5, window_seconds=1.0)

        started = time.monotonic()
        for _ in range(5):
            await limiter.acquire()

        assert time.monotonic() - started < 0.5
        assert limiter.current_starts == 5

    @pytest.mark.asyncio
    async def test_waits_when_window_full(self):
        """The start after the limit should wait for the window to slide."""
        limiter = InMemoryThroughputLimiter(2, window_seconds=0.1)

        started = time.monotonic()
        for _ in range(3):
            await limiter.acquire()

        assert time.monotonic() - started >= 0.09

    @pytest.mark.asyncio
    async def test_concurrent_callers_capped(self):
        limiter = InMemoryThroughputLimiter(3, window_seconds=0.2)
        stamps: list[float] = []

        async def start():
            await limiter.acquire()
            stamps.append(time.monotonic())

        await asyncio.gather(*(start() for _ in range(6)))

        stamps.sort()
        # No 0.2s window may contain more than 3 starts
        for i in range(len(stamps) - 3):
            assert stamps[i + 3] - stamps[i] >= 0.19


class TestRedisThroughputLimiter:
    """Tests for the Redis sliding window, with a mocked client."""

    @pytest.fixture
    def redis(self):
        client = AsyncMock()
        client.script_load = AsyncMock(return_value="sha123")
        client.evalsha = AsyncMock(return_value=[1, 0])
        return client

    @pytest.mark.asyncio
    async def test_allowed(self, redis):
        limiter = RedisThroughputLimiter(redis, 100, key="test:throughput")

        await limiter.acquire()

        redis.script_load.assert_awaited_once()
        args = redis.evalsha.call_args.args
        assert args[:3] == ("sha123", 1, "test:throughput")
        assert args[3] == 100
        assert args[4] == 1000

    @pytest.mark.asyncio
    async def test_script_loaded_once(self, redis):
        limiter = RedisThroughputLimiter(redis, 100)

        await limiter.acquire()
        await limiter.acquire()

        redis.script_load.assert_awaited_once()
        assert redis.evalsha.await_count == 2

    @pytest.mark.asyncio
    async def test_waits_when_denied(self, redis):
        """A denied start should sleep for the returned wait and try again."""
        redis.evalsha = AsyncMock(side_effect=[[0, 250], [1, 0]])
        limiter = RedisThroughputLimiter(redis, 1)

        with patch("courier.queue.limiter.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await limiter.acquire()

        mock_sleep.assert_awaited_once_with(0.25)
        assert redis.evalsha.await_count == 2

    @pytest.mark.asyncio
    async def test_reloads_flushed_script(self, redis):
        redis.evalsha = AsyncMock(side_effect=[NoScriptError("NOSCRIPT"), [1, 0]])
        limiter = RedisThroughputLimiter(redis, 10)

        await limiter.acquire()

        assert redis.script_load.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_open_when_redis_down(self, redis):
        """An unreachable Redis should not block deliveries."""
        redis.evalsha = AsyncMock(side_effect=RedisConnectionError("refused"))
        limiter = RedisThroughputLimiter(redis, 10)

        await asyncio.wait_for(limiter.acquire(), timeout=1)

    @pytest.mark.asyncio
    async def test_close(self, redis):
        limiter = RedisThroughputLimiter(redis, 10)
        await limiter.close()
        redis.aclose.assert_awaited_once()

    def test_rejects_zero_limit(self, redis):
        with pytest.raises(ValueError):
            RedisThroughputLimiter(redis, 0)
