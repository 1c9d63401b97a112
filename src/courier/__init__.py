"""Courier: signed webhook delivery with retries.

Delivers application events as signed HTTP callbacks to registered
endpoints, with at-least-once semantics under endpoint failure.

Quick Start:
    from courier.models import Subscription, Tenant
    from courier.service import CourierService

    async with CourierService.create() as courier:
        tenant = await courier.store.create_tenant(Tenant(name="Acme", api_key="key_123"))
        await courier.store.create_subscription(
            Subscription(
                tenant_id=tenant.id,
                url="https://example.com/webhooks",
                event_types=["order.created"],
            )
        )
        await courier.start_workers()
        await courier.submit_event(tenant.id, "order.created", {"order_id": 42})

Components:
    - Signer: HMAC-SHA256 over the exact request body
    - DeliveryExecutor: one HTTP attempt, classified into an outcome
    - RetryScheduler: backoff and the delivery state machine
    - FanoutDispatcher: one delivery per matching subscription
    - DeliveryQueue: in-memory or arq (Redis) transport
    - DeliveryStore: in-memory or SQLAlchemy persistence
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    CourierError,
    DeliveryError,
    DeliveryStateError,
    InvalidTenantError,
    NotFoundError,
    PermanentDeliveryError,
    QueueError,
    StorageError,
    TransientDeliveryError,
    ValidationError,
)

# Logging
from .logging import configure_logging, get_logger

# Models
from .models import Delivery, DeliveryStatus, Event, Subscription, Tenant

# Service
from .service import CourierService, SubmitResult

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "AuthenticationError",
    "ConfigurationError",
    "CourierError",
    "DeliveryError",
    "DeliveryStateError",
    "InvalidTenantError",
    "NotFoundError",
    "PermanentDeliveryError",
    "QueueError",
    "StorageError",
    "TransientDeliveryError",
    "ValidationError",
    # Logging
    "configure_logging",
    "get_logger",
    # Models
    "Delivery",
    "DeliveryStatus",
    "Event",
    "Subscription",
    "Tenant",
    # Service
    "CourierService",
    "SubmitResult",
]
