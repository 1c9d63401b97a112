"""In-memory delivery store.

Single-process only. Every operation runs under one ``asyncio.Lock``, which
makes the compare-and-set transitions and counter updates atomic within the
event loop. Callers always receive copies, never the stored objects.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel

from courier.exceptions import DeliveryStateError, NotFoundError, ValidationError
from courier.logging import get_logger
from courier.models import Delivery, DeliveryStatus, Event, Subscription, Tenant, utcnow

from .base import DeliveryStore

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(item: ModelT) -> ModelT:
    return item.model_copy(deep=True)


class InMemoryStore(DeliveryStore):
    """Dict-backed store for tests, demos, and single-process deployments."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._tenants: dict[str, Tenant] = {}
        self._tenant_ids_by_key: dict[str, str] = {}
        self._subscriptions: dict[str, Subscription] = {}
        self._events: dict[str, Event] = {}
        self._deliveries: dict[str, Delivery] = {}
        # (event_id, subscription_id) -> delivery_id
        self._delivery_pairs: dict[tuple[str, str], str] = {}

    # Tenants

    async def create_tenant(self, tenant: Tenant) -> Tenant:
        async with self._lock:
            if tenant.api_key in self._tenant_ids_by_key:
                raise ValidationError("api_key", "already in use")
            self._tenants[tenant.id] = _copy(tenant)
            self._tenant_ids_by_key[tenant.api_key] = tenant.id
            return _copy(tenant)

    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        async with self._lock:
            tenant = self._tenants.get(tenant_id)
            return _copy(tenant) if tenant else None

    async def get_tenant_by_api_key(self, api_key: str) -> Tenant | None:
        async with self._lock:
            tenant_id = self._tenant_ids_by_key.get(api_key)
            if tenant_id is None:
                return None
            return _copy(self._tenants[tenant_id])

    # Subscriptions

    async def create_subscription(self, subscription: Subscription) -> Subscription:
        async with self._lock:
            if subscription.tenant_id not in self._tenants:
                raise NotFoundError("tenant", subscription.tenant_id)
            self._subscriptions[subscription.id] = _copy(subscription)
            return _copy(subscription)

    async def get_subscription(
        self, subscription_id: str, tenant_id: str | None = None
    ) -> Subscription | None:
        async with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                return None
            if tenant_id is not None and subscription.tenant_id != tenant_id:
                return None
            return _copy(subscription)

    async def set_subscription_enabled(
        self, subscription_id: str, enabled: bool
    ) -> Subscription | None:
        async with self._lock:
            subscription = self._subscriptions.get(subscription_id)
            if subscription is None:
                return None
            subscription.enabled = enabled
            subscription.updated_at = utcnow()
            return _copy(subscription)

    async def find_matching_subscriptions(
        self, tenant_id: str, event_type: str
    ) -> list[Subscription]:
        async with self._lock:
            matches = [
                s
                for s in self._subscriptions.values()
                if s.tenant_id == tenant_id and s.subscribes_to(event_type)
            ]
            matches.sort(key=lambda s: s.created_at)
            return [_copy(s) for s in matches]

    # Events

    async def create_event(self, event: Event) -> Event:
        async with self._lock:
            self._events[event.id] = _copy(event)
            return _copy(event)

    async def get_event(self, event_id: str) -> Event | None:
        async with self._lock:
            event = self._events.get(event_id)
            return _copy(event) if event else None

    async def set_event_target_count(self, event_id: str, target_count: int) -> None:
        async with self._lock:
            event = self._events.get(event_id)
            if event is None:
                raise NotFoundError("event", event_id)
            event.target_count = target_count

    # Deliveries

    async def create_delivery(self, delivery: Delivery) -> tuple[Delivery, bool]:
        async with self._lock:
            pair = (delivery.event_id, delivery.subscription_id)
            existing_id = self._delivery_pairs.get(pair)
            if existing_id is not None:
                return _copy(self._deliveries[existing_id]), False

            self._deliveries[delivery.id] = _copy(delivery)
            self._delivery_pairs[pair] = delivery.id
            return _copy(delivery), True

    async def get_delivery(
        self, delivery_id: str, tenant_id: str | None = None
    ) -> Delivery | None:
        async with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None:
                return None
            if tenant_id is not None and delivery.tenant_id != tenant_id:
                return None
            return _copy(delivery)

    async def list_deliveries_for_event(self, event_id: str) -> list[Delivery]:
        async with self._lock:
            deliveries = [d for d in self._deliveries.values() if d.event_id == event_id]
            deliveries.sort(key=lambda d: d.created_at)
            return [_copy(d) for d in deliveries]

    def _claim(self, delivery: Delivery) -> Delivery | None:
        """Stored delivery if it still matches the caller's view, else None."""
        stored = self._deliveries.get(delivery.id)
        if stored is None:
            raise NotFoundError("delivery", delivery.id)
        if stored.status != DeliveryStatus.PENDING:
            return None
        if stored.attempt_count != delivery.attempt_count:
            return None
        return stored

    async def record_success(
        self,
        delivery: Delivery,
        *,
        status_code: int,
        response_body: str | None,
        at: datetime,
    ) -> Delivery | None:
        async with self._lock:
            stored = self._claim(delivery)
            if stored is None:
                logger.debug("delivery_transition_conflict", delivery_id=delivery.id)
                return None

            stored.status = DeliveryStatus.DELIVERED
            stored.attempt_count += 1
            stored.response_status = status_code
            stored.response_body = response_body
            stored.error_message = None
            stored.next_retry_at = None
            stored.delivered_at = at
            stored.updated_at = at

            subscription = self._subscriptions.get(stored.subscription_id)
            if subscription is not None:
                subscription.failure_count = 0
                subscription.last_success_at = at

            return _copy(stored)

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
        async with self._lock:
            stored = self._claim(delivery)
            if stored is None:
                logger.debug("delivery_transition_conflict", delivery_id=delivery.id)
                return None

            stored.attempt_count += 1
            stored.error_message = error
            stored.response_status = status_code
            stored.response_body = response_body
            stored.updated_at = at
            if terminal:
                stored.status = DeliveryStatus.FAILED
                stored.failed_at = at
                stored.next_retry_at = None
            else:
                stored.next_retry_at = next_retry_at

            subscription = self._subscriptions.get(stored.subscription_id)
            if subscription is not None:
                subscription.failure_count += 1
                subscription.last_failure_at = at

            return _copy(stored)

    async def reset_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        async with self._lock:
            stored = self._deliveries.get(delivery_id)
            if stored is None or stored.tenant_id != tenant_id:
                raise NotFoundError("delivery", delivery_id)
            if stored.status == DeliveryStatus.DELIVERED:
                raise DeliveryStateError(delivery_id, stored.status.value)

            now = utcnow()
            stored.status = DeliveryStatus.PENDING
            stored.attempt_count = 0
            stored.error_message = None
            stored.next_retry_at = None
            stored.failed_at = None
            stored.updated_at = now
            return _copy(stored)


__all__ = ["InMemoryStore"]
