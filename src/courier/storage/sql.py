"""SQLAlchemy-backed delivery store.

Works with any async SQLAlchemy driver (``sqlite+aiosqlite`` for development
and tests, ``postgresql+asyncpg`` in production). Delivery transitions are
single ``UPDATE ... WHERE status = 'pending' AND attempt_count = :expected``
statements, and the subscription counter is incremented in SQL, so
concurrent workers in different processes never lose an update.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from sqlalchemy import Update, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from courier.exceptions import DeliveryStateError, NotFoundError, StorageError, ValidationError
from courier.logging import get_logger
from courier.models import (
    Delivery,
    DeliveryStatus,
    Event,
    Subscription,
    Tenant,
    ensure_utc,
    utcnow,
)

from .base import DeliveryStore
from .retry import storage_operation
from .tables import Base, DeliveryRow, EventRow, SubscriptionRow, TenantRow

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _to_model(model_cls: type[ModelT], row: Base) -> ModelT:
    """Build a pydantic model from a row, restoring UTC on naive timestamps."""
    data: dict[str, Any] = {}
    for name in model_cls.model_fields:
        value = getattr(row, name)
        if isinstance(value, datetime):
            value = ensure_utc(value)
        data[name] = value
    return model_cls.model_validate(data)


def _engine_options(url: str, echo: bool) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":")):
        # One shared connection, otherwise every session sees a fresh empty database
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    elif not url.startswith("sqlite"):
        options["pool_pre_ping"] = True
    return options


class SQLStore(DeliveryStore):
    """Delivery store on an async SQLAlchemy engine.

    Example:
        ```python
        store = SQLStore("sqlite+aiosqlite:///./courier.db")
        await store.initialize()
        ```
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        echo: bool = False,
        engine: AsyncEngine | None = None,
    ) -> None:
        if engine is None:
            if url is None:
                raise ValueError("Either url or engine is required")
            engine = create_async_engine(url, **_engine_options(url, echo))
        self._engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False)
        # A single shared connection holds one transaction at a time
        self._lock = asyncio.Lock() if isinstance(engine.sync_engine.pool, StaticPool) else None

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def _session(self, *, begin: bool = False) -> AsyncIterator[AsyncSession]:
        async with self._lock if self._lock is not None else nullcontext():
            factory = self._sessions.begin() if begin else self._sessions()
            async with factory as session:
                yield session

    @storage_operation
    async def initialize(self) -> None:
        """Create tables that don't exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("sql_store_initialized", dialect=self._engine.dialect.name)

    async def close(self) -> None:
        await self._engine.dispose()

    # Tenants

    @storage_operation
    async def create_tenant(self, tenant: Tenant) -> Tenant:
        async with self._session() as session:
            session.add(TenantRow(**tenant.model_dump()))
            try:
                await session.commit()
            except IntegrityError as e:
                raise ValidationError("api_key", "already in use") from e
        return tenant

    @storage_operation
    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with self._session() as session:
            row = await session.get(TenantRow, tenant_id)
            return _to_model(Tenant, row) if row else None

    @storage_operation
    async def get_tenant_by_api_key(self, api_key: str) -> Tenant | None:
        async with self._session() as session:
            result = await session.execute(select(TenantRow).where(TenantRow.api_key == api_key))
            row = result.scalar_one_or_none()
            return _to_model(Tenant, row) if row else None

    # Subscriptions

    @storage_operation
    async def create_subscription(self, subscription: Subscription) -> Subscription:
        async with self._session() as session:
            if await session.get(TenantRow, subscription.tenant_id) is None:
                raise NotFoundError("tenant", subscription.tenant_id)
            data = subscription.model_dump()
            data["url"] = str(subscription.url)
            session.add(SubscriptionRow(**data))
            await session.commit()
        return subscription

    @storage_operation
    async def get_subscription(
        self, subscription_id: str, tenant_id: str | None = None
    ) -> Subscription | None:
        async with self._session() as session:
            row = await session.get(SubscriptionRow, subscription_id)
            if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                return None
            return _to_model(Subscription, row)

    @storage_operation
    async def set_subscription_enabled(
        self, subscription_id: str, enabled: bool
    ) -> Subscription | None:
        async with self._session(begin=True) as session:
            row = await session.get(SubscriptionRow, subscription_id)
            if row is None:
                return None
            row.enabled = enabled
            row.updated_at = utcnow()
            return _to_model(Subscription, row)

    @storage_operation
    async def find_matching_subscriptions(
        self, tenant_id: str, event_type: str
    ) -> list[Subscription]:
        async with self._session() as session:
            result = await session.execute(
                select(SubscriptionRow)
                .where(
                    SubscriptionRow.tenant_id == tenant_id,
                    SubscriptionRow.enabled.is_(True),
                )
                .order_by(SubscriptionRow.created_at)
            )
            rows = result.scalars().all()

        # JSON containment differs per dialect; filter event types here
        return [_to_model(Subscription, row) for row in rows if event_type in row.event_types]

    # Events

    @storage_operation
    async def create_event(self, event: Event) -> Event:
        async with self._session(begin=True) as session:
            session.add(EventRow(**event.model_dump()))
        return event

    @storage_operation
    async def get_event(self, event_id: str) -> Event | None:
        async with self._session() as session:
            row = await session.get(EventRow, event_id)
            return _to_model(Event, row) if row else None

    @storage_operation
    async def set_event_target_count(self, event_id: str, target_count: int) -> None:
        async with self._session(begin=True) as session:
            result = await session.execute(
                update(EventRow)
                .where(EventRow.id == event_id)
                .values(target_count=target_count)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("event", event_id)

    # Deliveries

    @storage_operation
    async def create_delivery(self, delivery: Delivery) -> tuple[Delivery, bool]:
        async with self._session() as session:
            session.add(DeliveryRow(**delivery.model_dump()))
            try:
                await session.commit()
                return delivery, True
            except IntegrityError:
                await session.rollback()

            result = await session.execute(
                select(DeliveryRow).where(
                    DeliveryRow.event_id == delivery.event_id,
                    DeliveryRow.subscription_id == delivery.subscription_id,
                )
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                raise StorageError(f"Could not insert delivery {delivery.id}")
            return _to_model(Delivery, existing), False

    @storage_operation
    async def get_delivery(
        self, delivery_id: str, tenant_id: str | None = None
    ) -> Delivery | None:
        async with self._session() as session:
            row = await session.get(DeliveryRow, delivery_id)
            if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
                return None
            return _to_model(Delivery, row)

    @storage_operation
    async def list_deliveries_for_event(self, event_id: str) -> list[Delivery]:
        async with self._session() as session:
            result = await session.execute(
                select(DeliveryRow)
                .where(DeliveryRow.event_id == event_id)
                .order_by(DeliveryRow.created_at)
            )
            return [_to_model(Delivery, row) for row in result.scalars().all()]

    @staticmethod
    def _claim(delivery: Delivery) -> Update:
        """UPDATE guarded by the caller's view of the delivery."""
        return (
            update(DeliveryRow)
            .where(
                DeliveryRow.id == delivery.id,
                DeliveryRow.status == DeliveryStatus.PENDING,
                DeliveryRow.attempt_count == delivery.attempt_count,
            )
            .execution_options(synchronize_session=False)
        )

    @storage_operation
    async def record_success(
        self,
        delivery: Delivery,
        *,
        status_code: int,
        response_body: str | None,
        at: datetime,
    ) -> Delivery | None:
        async with self._session(begin=True) as session:
            result = await session.execute(
                self._claim(delivery).values(
                    status=DeliveryStatus.DELIVERED,
                    attempt_count=DeliveryRow.attempt_count + 1,
                    response_status=status_code,
                    response_body=response_body,
                    error_message=None,
                    next_retry_at=None,
                    delivered_at=at,
                    updated_at=at,
                )
            )
            if result.rowcount != 1:
                return await self._conflict(session, delivery, DeliveryStatus.DELIVERED, at)

            await session.execute(
                update(SubscriptionRow)
                .where(SubscriptionRow.id == delivery.subscription_id)
                .values(failure_count=0, last_success_at=at)
                .execution_options(synchronize_session=False)
            )
            row = await session.get(DeliveryRow, delivery.id, populate_existing=True)
            return _to_model(Delivery, row)

    @storage_operation
    async def record_failure(
        self,
        delivery: Delivery,
        *,
        error: str,
        status_code: int | None,
        response_body: str | None,
        terminal: bool,
        next_retry_at: datetime | None,
        at: datetime,
    ) -> Delivery | None:
        values: dict[str, Any] = {
            "attempt_count": DeliveryRow.attempt_count + 1,
            "error_message": error,
            "response_status": status_code,
            "response_body": response_body,
            "updated_at": at,
        }
        if terminal:
            values.update(status=DeliveryStatus.FAILED, failed_at=at, next_retry_at=None)
        else:
            values["next_retry_at"] = next_retry_at

        async with self._session(begin=True) as session:
            result = await session.execute(self._claim(delivery).values(**values))
            if result.rowcount != 1:
                status = DeliveryStatus.FAILED if terminal else DeliveryStatus.PENDING
                return await self._conflict(session, delivery, status, at)

            await session.execute(
                update(SubscriptionRow)
                .where(SubscriptionRow.id == delivery.subscription_id)
                .values(
                    failure_count=SubscriptionRow.failure_count + 1,
                    last_failure_at=at,
                )
                .execution_options(synchronize_session=False)
            )
            row = await session.get(DeliveryRow, delivery.id, populate_existing=True)
            return _to_model(Delivery, row)

    @staticmethod
    async def _conflict(
        session: AsyncSession,
        delivery: Delivery,
        status: DeliveryStatus,
        at: datetime,
    ) -> Delivery | None:
        """Resolve a guarded UPDATE that matched no row.

        A retried call whose first commit landed before the connection
        dropped finds its own write: same status, one attempt further, and
        the same timestamp. That write is returned as applied.
        """
        row = await session.get(DeliveryRow, delivery.id)
        if row is None:
            raise NotFoundError("delivery", delivery.id)
        if (
            row.status == status
            and row.attempt_count == delivery.attempt_count + 1
            and ensure_utc(row.updated_at) == ensure_utc(at)
        ):
            logger.info("delivery_transition_already_applied", delivery_id=delivery.id)
            return _to_model(Delivery, row)
        logger.debug("delivery_transition_conflict", delivery_id=delivery.id)
        return None

    @storage_operation
    async def reset_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        async with self._session(begin=True) as session:
            result = await session.execute(
                update(DeliveryRow)
                .where(
                    DeliveryRow.id == delivery_id,
                    DeliveryRow.tenant_id == tenant_id,
                    DeliveryRow.status != DeliveryStatus.DELIVERED,
                )
                .values(
                    status=DeliveryStatus.PENDING,
                    attempt_count=0,
                    error_message=None,
                    next_retry_at=None,
                    failed_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            row = await session.get(DeliveryRow, delivery_id, populate_existing=True)
            if row is None or row.tenant_id != tenant_id:
                raise NotFoundError("delivery", delivery_id)
            if result.rowcount == 0:
                raise DeliveryStateError(delivery_id, row.status.value)
            return _to_model(Delivery, row)


__all__ = ["SQLStore"]
