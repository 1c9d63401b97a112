"""Tests for the arq (Redis) delivery queue, with a mocked pool."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from courier.exceptions import QueueError
from courier.queue import ArqQueue, DeliveryTask
from courier.queue.arq_queue import DELIVER_FUNCTION, job_id_for


@pytest.fixture
def task() -> DeliveryTask:
    return DeliveryTask(delivery_id="dlv_1", subscription_id="whk_1", event_id="evt_1", attempt=2)


@pytest.fixture
def redis() -> AsyncMock:
    pool = AsyncMock()
    pool.enqueue_job = AsyncMock(return_value=MagicMock())
    return pool


class TestArqQueue:
    """Tests for ArqQueue."""

    def test_requires_pool_or_url(self):
        with pytest.raises(ValueError):
            ArqQueue()

    def test_job_id_includes_attempt(self, task):
        assert job_id_for(task) == "dlv_1:2"

    @pytest.mark.asyncio
    async def test_enqueue(self, redis, task):
        queue = ArqQueue(redis)

        assert await queue.enqueue(task) is True

        redis.enqueue_job.assert_awaited_once_with(
            DELIVER_FUNCTION,
            task.model_dump(),
            _job_id="dlv_1:2",
            _defer_by=None,
        )

    @pytest.mark.asyncio
    async def test_enqueue_delayed(self, redis, task):
        queue = ArqQueue(redis)

        await queue.enqueue_delayed(task, 2.5)

        assert redis.enqueue_job.call_args.kwargs["_defer_by"] == timedelta(seconds=2.5)

    @pytest.mark.asyncio
    async def test_duplicate_job_returns_false(self, redis, task):
        """arq returns None when the job ID is already taken."""
        redis.enqueue_job.return_value = None

        assert await ArqQueue(redis).enqueue(task) is False

    @pytest.mark.asyncio
    async def test_redis_error_raises_queue_error(self, redis, task):
        redis.enqueue_job.side_effect = RedisConnectionError("refused")

        with pytest.raises(QueueError, match="dlv_1:2"):
            await ArqQueue(redis).enqueue(task)

    @pytest.mark.asyncio
    async def test_connects_lazily_from_url(self, redis, task):
        with patch("courier.queue.arq_queue.create_pool", AsyncMock(return_value=redis)) as pool:
            queue = ArqQueue(redis_url="redis://localhost:6379/0")
            pool.assert_not_called()

            await queue.enqueue(task)
            await queue.enqueue(task)

        pool.assert_awaited_once()
        await queue.close()
        redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        failing = AsyncMock(side_effect=OSError("connection refused"))
        with patch("courier.queue.arq_queue.create_pool", failing):
            queue = ArqQueue(redis_url="redis://localhost:6379/0")

            with pytest.raises(QueueError):
                await queue.connect()

    @pytest.mark.asyncio
    async def test_close_leaves_shared_pool_open(self, redis):
        """A pool passed in belongs to its owner (the arq worker)."""
        await ArqQueue(redis).close()

        redis.aclose.assert_not_called()
