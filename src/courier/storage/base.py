"""Delivery store contract.

The engine reads subscriptions and events and writes delivery transitions
through this interface only. Both delivery outcome methods are
compare-and-set operations: they apply only while the delivery is still
``pending`` with the attempt count the caller saw, and they update the
subscription's counters in the same unit of work.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from courier.models import Delivery, Event, Subscription, Tenant


class DeliveryStore(ABC):
    """Abstract persistence for tenants, subscriptions, events, and deliveries."""

    async def initialize(self) -> None:  # noqa: B027
        """Prepare the backing store (create tables, open pools)."""

    async def close(self) -> None:  # noqa: B027
        """Release backing store resources."""

    # Tenants

    @abstractmethod
    async def create_tenant(self, tenant: Tenant) -> Tenant: ...

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Tenant | None: ...

    @abstractmethod
    async def get_tenant_by_api_key(self, api_key: str) -> Tenant | None: ...

    # Subscriptions

    @abstractmethod
    async def create_subscription(self, subscription: Subscription) -> Subscription: ...

    @abstractmethod
    async def get_subscription(
        self, subscription_id: str, tenant_id: str | None = None
    ) -> Subscription | None:
        """Get a subscription, optionally scoped to a tenant."""
        ...

    @abstractmethod
    async def set_subscription_enabled(
        self, subscription_id: str, enabled: bool
    ) -> Subscription | None:
        """Enable or disable a subscription. Returns None if it doesn't exist."""
        ...

    @abstractmethod
    async def find_matching_subscriptions(
        self, tenant_id: str, event_type: str
    ) -> list[Subscription]:
        """Enabled subscriptions of a tenant that include ``event_type``.

        Returned oldest first.
        """
        ...

    # Events

    @abstractmethod
    async def create_event(self, event: Event) -> Event: ...

    @abstractmethod
    async def get_event(self, event_id: str) -> Event | None: ...

    @abstractmethod
    async def set_event_target_count(self, event_id: str, target_count: int) -> None: ...

    # Deliveries

    @abstractmethod
    async def create_delivery(self, delivery: Delivery) -> tuple[Delivery, bool]:
        """Insert a delivery unless one exists for its (event, subscription) pair.

        Returns:
            The stored delivery and whether it was created by this call.
        """
        ...

    @abstractmethod
    async def get_delivery(
        self, delivery_id: str, tenant_id: str | None = None
    ) -> Delivery | None:
        """Get a delivery, optionally scoped to a tenant."""
        ...

    @abstractmethod
    async def list_deliveries_for_event(self, event_id: str) -> list[Delivery]: ...

    @abstractmethod
    async def record_success(
        self,
        delivery: Delivery,
        *,
        status_code: int,
        response_body: str | None,
        at: datetime,
    ) -> Delivery | None:
        """Mark a pending delivery delivered.

        Applies only if the stored delivery is pending with
        ``attempt_count == delivery.attempt_count``. Increments the attempt
        count, resets the subscription's ``failure_count`` to 0, and sets
        its ``last_success_at``.

        Returns:
            The updated delivery, or None if another execution got there first.
        """
        ...

    @abstractmethod
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
        """Record a failed attempt on a pending delivery.

        Same compare-and-set condition as ``record_success``. Increments
        the attempt count; moves to ``failed`` when ``terminal``, otherwise
        stays ``pending`` with ``next_retry_at``. Atomically increments the
        subscription's ``failure_count`` and sets ``last_failure_at``.

        Returns:
            The updated delivery, or None if another execution got there first.
        """
        ...

    @abstractmethod
    async def reset_delivery(self, delivery_id: str, tenant_id: str) -> Delivery:
        """Return a failed or pending delivery to ``pending`` with zero attempts.

        Raises:
            NotFoundError: If the delivery doesn't exist for this tenant.
            DeliveryStateError: If the delivery was already delivered.
        """
        ...


__all__ = ["DeliveryStore"]
