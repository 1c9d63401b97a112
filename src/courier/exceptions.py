"""Courier exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from CourierError for easy catching.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base exception for all Courier errors.

    All custom exceptions in Courier inherit from this class,
    allowing callers to catch all Courier-related errors with
    a single except clause.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(CourierError):
    """Invalid input provided.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CourierError):
    """Resource not found.

    Raised when a referenced event, subscription, or delivery doesn't exist
    (or belongs to another tenant). Never retried.

    Attributes:
        resource_type: Type of resource (e.g., "delivery", "subscription").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class AuthenticationError(CourierError):
    """Authentication failed.

    Raised when tenant credentials are invalid or missing.
    """

    code: str = "authentication_error"


class InvalidTenantError(AuthenticationError):
    """Unknown tenant or API key.

    Rejected at the ingestion boundary; never reaches the delivery engine.
    """

    code: str = "invalid_tenant"

    def __init__(self, message: str = "Invalid API key") -> None:
        super().__init__(message)


class DeliveryStateError(CourierError):
    """A delivery cannot make the requested transition.

    Raised for a manual retry of a delivery that is already delivered.

    Attributes:
        delivery_id: ID of the delivery.
        status: Its current status.
    """

    code: str = "invalid_delivery_state"

    def __init__(self, delivery_id: str, status: str) -> None:
        self.delivery_id = delivery_id
        self.status = status
        super().__init__(f"Delivery {delivery_id} is {status} and cannot be retried")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "delivery_id": self.delivery_id,
                "status": self.status,
                "message": self.message,
            }
        }


class DeliveryError(CourierError):
    """A webhook delivery attempt failed.

    Attributes:
        status_code: HTTP status returned by the receiver, if any.
    """

    code: str = "delivery_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Delivery failed in a way that is retried (timeout, connection, 5xx, 429)."""

    code: str = "transient_delivery_error"


class PermanentDeliveryError(DeliveryError):
    """Delivery failed in a way that retrying will not fix (disabled, most 4xx)."""

    code: str = "permanent_delivery_error"


class QueueError(CourierError):
    """Enqueueing a delivery task failed.

    The delivery row stays pending and can be recovered by a manual retry.
    """

    code: str = "queue_error"


class StorageError(CourierError):
    """Storage operation failed after infrastructure-level retries."""

    code: str = "storage_error"


class ConfigurationError(CourierError):
    """Required configuration is missing or invalid."""

    code: str = "configuration_error"
