"""arq (Redis) transport for delivery tasks.

Jobs are consumed by ``arq courier.worker.WorkerSettings``. arq keeps a job
ID reserved until that job finishes, and a retry is enqueued from inside the
running job, so job IDs are qualified with the attempt number
(``<delivery_id>:<attempt>``). Duplicate enqueues of the same attempt are
still rejected by arq; a task for an attempt that has already run is skipped
by the scheduler's attempt check.
"""

from __future__ import annotations

from datetime import timedelta

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from courier.exceptions import QueueError
from courier.logging import get_logger

from .base import DeliveryQueue, DeliveryTask

logger = get_logger(__name__)

DELIVER_FUNCTION = "deliver_webhook"


def job_id_for(task: DeliveryTask) -> str:
    """arq job ID for a task."""
    return f"{task.delivery_id}:{task.attempt}"


class ArqQueue(DeliveryQueue):
    """Delivery queue backed by an arq Redis pool.

    Pass an existing pool (the arq worker's ``ctx["redis"]``) or a Redis URL;
    with a URL the pool is opened by ``connect()`` or on first enqueue.
    """

    def __init__(self, redis: ArqRedis | None = None, *, redis_url: str | None = None) -> None:
        if redis is None and redis_url is None:
            raise ValueError("Either redis or redis_url is required")
        self._redis = redis
        self._redis_url = redis_url
        self._owns_pool = False

    async def connect(self) -> None:
        """Open the pool if this queue was created from a URL.

        Raises:
            QueueError: If Redis cannot be reached.
        """
        if self._redis is not None:
            return
        assert self._redis_url is not None, "redis_url not set"
        try:
            self._redis = await create_pool(RedisSettings.from_dsn(self._redis_url))
        except (OSError, RedisError) as e:
            raise QueueError(f"Failed to connect to Redis: {e}") from e
        self._owns_pool = True
        logger.info("arq_queue_connected")

    async def enqueue(self, task: DeliveryTask) -> bool:
        return await self._enqueue(task, None)

    async def enqueue_delayed(self, task: DeliveryTask, delay_seconds: float) -> bool:
        defer_by = timedelta(seconds=delay_seconds) if delay_seconds > 0 else None
        return await self._enqueue(task, defer_by)

    async def _enqueue(self, task: DeliveryTask, defer_by: timedelta | None) -> bool:
        await self.connect()
        assert self._redis is not None, "arq pool not connected"
        job_id = job_id_for(task)
        try:
            job = await self._redis.enqueue_job(
                DELIVER_FUNCTION,
                task.model_dump(),
                _job_id=job_id,
                _defer_by=defer_by,
            )
        except (OSError, RedisError) as e:
            raise QueueError(f"Failed to enqueue {job_id}: {e}") from e

        if job is None:
            logger.debug("task_deduplicated", job_id=job_id)
            return False
        return True

    async def close(self) -> None:
        if self._owns_pool and self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._owns_pool = False


__all__ = ["DELIVER_FUNCTION", "ArqQueue", "job_id_for"]
