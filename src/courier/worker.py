"""arq worker for webhook deliveries.

Consumes tasks enqueued by ``ArqQueue``. Run with::

    arq courier.worker.WorkerSettings

Each job runs one delivery attempt through ``CourierService.process_task``.
Receiver failures never fail the job: the scheduler records them and
enqueues the next attempt itself. Only infrastructure failures
(``StorageError``) raise ``Retry`` so arq runs the same job again.
"""

from __future__ import annotations

from typing import Any

from arq import Retry
from arq.connections import RedisSettings

from courier.config import Settings
from courier.exceptions import NotFoundError, StorageError
from courier.logging import configure_logging, get_logger, log_context
from courier.queue import ArqQueue, DeliveryTask, RedisThroughputLimiter
from courier.service import CourierService

logger = get_logger(__name__)

worker_settings = Settings()


async def startup(ctx: dict[str, Any]) -> None:
    """Build the service on the worker's own Redis pool."""
    settings: Settings = ctx.get("settings") or worker_settings
    configure_logging(level=settings.log_level, format=settings.log_format)

    if settings.uses_memory_store:
        logger.warning("arq_worker_memory_store", detail="state is not shared with the API process")

    service = CourierService.create(
        settings,
        queue=ArqQueue(ctx["redis"]),
        limiter=RedisThroughputLimiter(ctx["redis"], settings.worker_max_starts_per_second),
    )
    await service.store.initialize()

    ctx["service"] = service
    logger.info("arq_worker_started", concurrency=settings.worker_concurrency)


async def shutdown(ctx: dict[str, Any]) -> None:
    """Close the store; the Redis pool belongs to arq."""
    service: CourierService | None = ctx.get("service")
    if service is not None:
        await service.store.close()
    logger.info("arq_worker_stopped")


async def deliver_webhook(ctx: dict[str, Any], task_data: dict[str, Any]) -> dict[str, Any]:
    """Run one delivery attempt.

    Returns:
        Summary of what processing did (discarded, since ``keep_result`` is 0).
    """
    service: CourierService = ctx["service"]
    task = DeliveryTask.model_validate(task_data)
    job_try = ctx.get("job_try", 1)

    with log_context(delivery_id=task.delivery_id, attempt=task.attempt, job_try=job_try):
        if service.limiter is not None:
            await service.limiter.acquire()
        try:
            result = await service.process_task(task)
        except NotFoundError as e:
            logger.warning("delivery_task_dropped", error=e.message)
            return {"action": "dropped", "error": e.message}
        except StorageError as e:
            defer = service.settings.queue_redelivery_delay_seconds * job_try
            logger.warning("delivery_task_storage_error", error=e.message, defer_seconds=defer)
            raise Retry(defer=defer) from e

    return {
        "action": result.action.value,
        "delivery_id": result.delivery.id,
        "status": result.delivery.status.value,
        "attempt_count": result.delivery.attempt_count,
    }


class WorkerSettings:
    """Settings for the arq worker - use with 'arq courier.worker.WorkerSettings'"""

    functions = [deliver_webhook]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(worker_settings.redis_url)
    max_jobs = worker_settings.worker_concurrency
    job_timeout = worker_settings.worker_job_timeout_seconds
    max_tries = worker_settings.worker_max_tries
    keep_result = 0


__all__ = ["WorkerSettings", "deliver_webhook", "shutdown", "startup"]
