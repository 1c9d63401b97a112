"""Domain models for Courier.

Entities:
    - Tenant: Sender organization, looked up by API key
    - Subscription: Receiver endpoint, matching rules, retry configuration
    - Event: Immutable fact to fan out
    - Delivery: Attempt tracking for one (event, subscription) pair
"""

from .base import ensure_utc, generate_id, truncate, utcnow
from .delivery import (
    ERROR_MESSAGE_LIMIT,
    RESPONSE_BODY_LIMIT,
    TERMINAL_STATUSES,
    Delivery,
    DeliveryStatus,
)
from .event import Event
from .subscription import (
    MAX_RETRIES,
    MAX_RETRY_DELAY_MS,
    MIN_RETRIES,
    MIN_RETRY_DELAY_MS,
    Subscription,
)
from .tenant import Tenant

__all__ = [
    # Helpers
    "ensure_utc",
    "generate_id",
    "truncate",
    "utcnow",
    # Entities
    "Delivery",
    "DeliveryStatus",
    "Event",
    "Subscription",
    "Tenant",
    # Limits
    "ERROR_MESSAGE_LIMIT",
    "MAX_RETRIES",
    "MAX_RETRY_DELAY_MS",
    "MIN_RETRIES",
    "MIN_RETRY_DELAY_MS",
    "RESPONSE_BODY_LIMIT",
    "TERMINAL_STATUSES",
]
