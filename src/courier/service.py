"""Core Courier service layer.

``CourierService`` wires the store, queue, executor, scheduler, and
dispatcher together from ``Settings`` and exposes the operations the HTTP
API and the workers need.

Example:
    ```python
    from courier.service import CourierService

    async with CourierService.create() as courier:
        await courier.start_workers()
        result = await courier.submit_event(
            tenant_id="org_123",
            event_type="order.created",
            payload={"order_id": 42},
        )
        print(f"Queued {result.queued_count} deliveries for {result.event_id}")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from courier.config import Settings
from courier.delivery import DeliveryExecutor, FanoutDispatcher, ProcessResult, RetryScheduler
from courier.exceptions import (
    ConfigurationError,
    InvalidTenantError,
    NotFoundError,
    QueueError,
    ValidationError,
)
from courier.logging import get_logger
from courier.models import Delivery, Tenant
from courier.queue import (
    ArqQueue,
    DeliveryQueue,
    DeliveryTask,
    InMemoryQueue,
    InMemoryThroughputLimiter,
    RedisThroughputLimiter,
    ThroughputLimiter,
    WorkerPool,
)
from courier.storage import DeliveryStore, InMemoryStore, SQLStore

logger = get_logger(__name__)


@dataclass
class SubmitResult:
    """Result of submitting one event.

    Attributes:
        event_id: ID of the persisted event.
        queued_count: Deliveries handed to the queue.
        delivery_ids: Every delivery created for the event.
        matched_count: Subscriptions that matched the event type.
        unqueued_delivery_ids: Deliveries left pending because enqueue failed.
    """

    event_id: str
    queued_count: int
    delivery_ids: list[str] = field(default_factory=list)
    matched_count: int = 0
    unqueued_delivery_ids: list[str] = field(default_factory=list)


@dataclass
class CourierService:
    """High-level webhook delivery service.

    Uses dependency injection for the store and the queue, so tests can
    pass in-memory backends and production can pass SQL and arq ones.

    Attributes:
        store: Persistence backend.
        queue: Delivery task queue.
        settings: Configuration settings.
        executor: HTTP attempt executor (built from settings if omitted).
        limiter: Task-start limiter used by workers (optional).
    """

    store: DeliveryStore
    queue: DeliveryQueue
    settings: Settings
    executor: DeliveryExecutor | None = field(default=None)
    limiter: ThroughputLimiter | None = field(default=None)

    scheduler: RetryScheduler = field(init=False, repr=False)
    dispatcher: FanoutDispatcher = field(init=False, repr=False)
    _workers: WorkerPool | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        """Build the engine components after dataclass construction."""
        if self.executor is None:
            self.executor = DeliveryExecutor.from_settings(self.settings)
        self.scheduler = RetryScheduler.from_settings(
            self.settings, self.store, self.queue, self.executor
        )
        self.dispatcher = FanoutDispatcher(self.store, self.queue)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        *,
        queue: DeliveryQueue | None = None,
        limiter: ThroughputLimiter | None = None,
    ) -> CourierService:
        """Create a CourierService with backends selected by settings.

        Args:
            settings: Optional settings. Uses defaults if None.
            queue: Queue to use instead of the one settings select.
            limiter: Limiter to use instead of the one settings select.

        Example:
            ```python
            # In-memory store and queue (tests, demos)
            courier = CourierService.create()

            # SQL store and arq queue
            settings = Settings(
                database_url="postgresql+asyncpg://courier@localhost/courier",
                queue_backend="arq",
            )
            courier = CourierService.create(settings)
            ```
        """
        if settings is None:
            settings = Settings()

        store: DeliveryStore
        if settings.uses_memory_store:
            store = InMemoryStore()
        else:
            assert settings.database_url is not None, "database_url not set"
            store = SQLStore(settings.database_url, echo=settings.database_echo)

        if queue is None:
            queue = _create_queue(settings)
        if limiter is None:
            limiter = _create_limiter(settings)

        return cls(store=store, queue=queue, settings=settings, limiter=limiter)

    async def initialize(self) -> None:
        """Initialize the store and connect the queue."""
        await self.store.initialize()
        await self.queue.connect()

    async def close(self) -> None:
        """Stop workers and release every backend."""
        await self.stop_workers()
        await self.queue.close()
        if self.limiter is not None:
            await self.limiter.close()
        await self.store.close()

    async def __aenter__(self) -> CourierService:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    # Ingestion boundary

    async def authenticate(self, api_key: str | None) -> Tenant:
        """Resolve the tenant for an API key.

        Raises:
            InvalidTenantError: If the key is missing or unknown.
        """
        if not api_key:
            raise InvalidTenantError("API key required")
        tenant = await self.store.get_tenant_by_api_key(api_key)
        if tenant is None:
            raise InvalidTenantError()
        return tenant

    async def submit_event(
        self,
        tenant_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> SubmitResult:
        """Persist an event and fan it out to matching subscriptions.

        Raises:
            InvalidTenantError: If the tenant doesn't exist.
            ValidationError: If the event type is blank or the payload isn't an object.
        """
        if await self.store.get_tenant(tenant_id) is None:
            raise InvalidTenantError(f"Unknown tenant: {tenant_id}")
        if not event_type or not event_type.strip():
            raise ValidationError("event", "must not be empty")
        if not isinstance(payload, dict):
            raise ValidationError("data", "must be a JSON object")

        result = await self.dispatcher.dispatch(tenant_id, event_type.strip(), payload)
        return SubmitResult(
            event_id=result.event_id,
            queued_count=result.queued_count,
            delivery_ids=result.delivery_ids,
            matched_count=result.matched_count,
            unqueued_delivery_ids=result.unqueued_delivery_ids,
        )

    # Delivery management

    async def get_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        """Get one delivery owned by ``tenant_id``.

        Raises:
            NotFoundError: If it doesn't exist or belongs to another tenant.
        """
        delivery = await self.store.get_delivery(delivery_id, tenant_id=tenant_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        return delivery

    async def retry_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        """Reset a failed or stuck delivery and queue its first attempt again.

        Raises:
            NotFoundError: If it doesn't exist or belongs to another tenant.
            DeliveryStateError: If it was already delivered.
            QueueError: If the reset delivery could not be queued; it stays
                pending and the retry can be repeated.
        """
        delivery = await self.store.reset_delivery(delivery_id, tenant_id)
        try:
            await self.queue.enqueue(DeliveryTask.for_delivery(delivery))
        except QueueError as e:
            logger.error("manual_retry_enqueue_failed", delivery_id=delivery_id, error=e.message)
            raise
        logger.info("manual_retry_queued", delivery_id=delivery_id, tenant_id=tenant_id)
        return delivery

    async def send_test(self, subscription_id: str, tenant_id: str) -> Delivery:
        """Queue a signed ``webhook.test`` delivery to one subscription.

        Raises:
            NotFoundError: If the subscription doesn't exist or belongs to
                another tenant.
            ValidationError: If the subscription is disabled.
            QueueError: If the test delivery could not be queued.
        """
        subscription = await self.store.get_subscription(subscription_id, tenant_id=tenant_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        if not subscription.enabled:
            raise ValidationError("subscription", "is disabled")
        return await self.dispatcher.dispatch_test(subscription)

    async def process_task(self, task: DeliveryTask) -> ProcessResult:
        """Run one delivery task through the retry scheduler."""
        return await self.scheduler.process(task)

    # In-process workers

    async def start_workers(self) -> WorkerPool:
        """Start consumers for the in-memory queue.

        Raises:
            ConfigurationError: If the queue is not an InMemoryQueue; arq
                queues are consumed by ``arq courier.worker.WorkerSettings``.
        """
        if not isinstance(self.queue, InMemoryQueue):
            raise ConfigurationError(
                "In-process workers need the memory queue backend; "
                "run `arq courier.worker.WorkerSettings` for arq"
            )
        if self._workers is None:
            self._workers = WorkerPool(
                self.queue,
                self.process_task,
                concurrency=self.settings.worker_concurrency,
                limiter=self.limiter,
                max_redeliveries=self.settings.queue_max_redeliveries,
                redelivery_delay_seconds=self.settings.queue_redelivery_delay_seconds,
            )
        await self._workers.start()
        return self._workers

    async def stop_workers(self) -> None:
        """Stop in-process consumers, if running."""
        if self._workers is not None:
            await self._workers.stop()

    @property
    def workers(self) -> WorkerPool | None:
        return self._workers


def _create_queue(settings: Settings) -> DeliveryQueue:
    if settings.queue_backend == "memory":
        return InMemoryQueue()
    if settings.queue_backend == "arq":
        return ArqQueue(redis_url=settings.redis_url)
    raise ConfigurationError(f"Unknown queue backend: {settings.queue_backend}")


def _create_limiter(settings: Settings) -> ThroughputLimiter:
    if settings.queue_backend == "arq":
        return RedisThroughputLimiter.from_url(
            settings.redis_url, settings.worker_max_starts_per_second
        )
    return InMemoryThroughputLimiter(settings.worker_max_starts_per_second)


__all__ = ["CourierService", "SubmitResult"]
