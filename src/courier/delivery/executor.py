"""Single webhook delivery attempt.

The executor builds the signed request, sends it, and classifies what
happened into an explicit outcome value. It never raises: retry decisions
belong to the scheduler, which reads the outcome.

Classification:
    - 2xx: Success
    - 408, 429, 5xx, 1xx/3xx: TransientFailure (HTTP_STATUS)
    - any other 4xx: PermanentFailure (HTTP_STATUS)
    - timeout, connection/DNS failure, redirect loop, other transport
      errors: TransientFailure
    - disabled subscription: PermanentFailure (DISABLED), no network I/O
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from courier import __version__
from courier.exceptions import PermanentDeliveryError, TransientDeliveryError
from courier.logging import get_logger
from courier.models import ERROR_MESSAGE_LIMIT, RESPONSE_BODY_LIMIT, truncate
from courier.signing import sign

if TYPE_CHECKING:
    from courier.config import Settings
    from courier.models import Event, Subscription

logger = get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_ID_HEADER = "X-Webhook-ID"
DELIVERY_ID_HEADER = "X-Webhook-Delivery"
EVENT_TYPE_HEADER = "X-Event-Type"

RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class FailureReason(str, Enum):
    """Why an attempt failed."""

    HTTP_STATUS = "http_status"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    REQUEST_ERROR = "request_error"
    DISABLED = "disabled"


@dataclass(frozen=True)
class Success:
    """The receiver answered with a 2xx status."""

    status_code: int
    response_body: str | None = None
    duration_ms: float = 0.0

    @property
    def error(self) -> None:
        return None

    def raise_for_outcome(self) -> None:
        """No-op; present so every outcome can be checked the same way."""


@dataclass(frozen=True)
class TransientFailure:
    """The attempt failed in a way a later attempt may not."""

    reason: FailureReason
    error: str
    status_code: int | None = None
    response_body: str | None = None
    duration_ms: float = 0.0

    def raise_for_outcome(self) -> None:
        raise TransientDeliveryError(self.error, self.status_code)


@dataclass(frozen=True)
class PermanentFailure:
    """The attempt failed in a way retrying will not fix."""

    reason: FailureReason
    error: str
    status_code: int | None = None
    response_body: str | None = None
    duration_ms: float = 0.0

    def raise_for_outcome(self) -> None:
        raise PermanentDeliveryError(self.error, self.status_code)


Outcome = Success | TransientFailure | PermanentFailure


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


def is_retryable_status(status_code: int) -> bool:
    """Whether a non-2xx status is worth another attempt."""
    if 400 <= status_code < 500:
        return status_code in RETRYABLE_CLIENT_STATUSES
    return not is_success_status(status_code)


def serialize_envelope(event: Event) -> bytes:
    """Compact UTF-8 JSON of the event envelope; these exact bytes are signed."""
    return json.dumps(
        event.envelope(),
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


class DeliveryExecutor:
    """Performs one signed HTTP POST per call.

    Example:
        ```python
        executor = DeliveryExecutor.from_settings(settings)
        outcome = await executor.execute(subscription, event, delivery.id)
        if isinstance(outcome, Success):
            ...
        ```
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        max_redirects: int = 5,
        user_agent: str = f"Courier/{__version__}",
        response_body_limit: int = RESPONSE_BODY_LIMIT,
        error_message_limit: int = ERROR_MESSAGE_LIMIT,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_redirects = max_redirects
        self.user_agent = user_agent
        self.response_body_limit = response_body_limit
        self.error_message_limit = error_message_limit

    @classmethod
    def from_settings(cls, settings: Settings) -> DeliveryExecutor:
        return cls(
            timeout_seconds=settings.delivery_timeout_seconds,
            max_redirects=settings.delivery_max_redirects,
            user_agent=settings.user_agent,
            response_body_limit=settings.response_body_limit,
            error_message_limit=settings.error_message_limit,
        )

    def build_request(
        self,
        subscription: Subscription,
        event: Event,
        delivery_id: str,
    ) -> tuple[bytes, dict[str, str]]:
        """Serialize, sign, and build headers for one attempt."""
        body = serialize_envelope(event)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign(body, subscription.secret),
            EVENT_ID_HEADER: event.id,
            DELIVERY_ID_HEADER: delivery_id,
            EVENT_TYPE_HEADER: event.event_type,
            "User-Agent": self.user_agent,
        }
        return body, headers

    async def execute(
        self,
        subscription: Subscription,
        event: Event,
        delivery_id: str,
    ) -> Outcome:
        """Deliver ``event`` to ``subscription`` once and classify the result."""
        if not subscription.enabled:
            return PermanentFailure(
                reason=FailureReason.DISABLED,
                error="Subscription is disabled",
            )

        body, headers = self.build_request(subscription, event, delivery_id)
        started = time.perf_counter()

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=True,
                max_redirects=self.max_redirects,
            ) as client:
                response = await client.post(
                    str(subscription.url),
                    content=body,
                    headers=headers,
                )
        except httpx.TimeoutException:
            return self._transient(
                FailureReason.TIMEOUT,
                f"Request timed out after {self.timeout_seconds:g}s",
                started,
            )
        except httpx.TooManyRedirects:
            return self._transient(
                FailureReason.TOO_MANY_REDIRECTS,
                f"Too many redirects (limit {self.max_redirects})",
                started,
            )
        except httpx.NetworkError as e:
            return self._transient(FailureReason.CONNECTION, f"Connection failed: {e}", started)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return self._transient(FailureReason.REQUEST_ERROR, f"Request failed: {e}", started)
        except Exception as e:
            logger.exception("delivery_request_error", url=str(subscription.url))
            return self._transient(FailureReason.REQUEST_ERROR, f"Unexpected error: {e}", started)

        return self._classify(response, started)

    def _classify(self, response: httpx.Response, started: float) -> Outcome:
        status_code = response.status_code
        response_body = truncate(response.text, self.response_body_limit) or None
        duration_ms = _elapsed_ms(started)

        if is_success_status(status_code):
            return Success(
                status_code=status_code,
                response_body=response_body,
                duration_ms=duration_ms,
            )

        snippet = response.text[:200].strip()
        error = f"HTTP {status_code}: {snippet}" if snippet else f"HTTP {status_code}"
        failure: dict[str, Any] = {
            "reason": FailureReason.HTTP_STATUS,
            "error": truncate(error, self.error_message_limit),
            "status_code": status_code,
            "response_body": response_body,
            "duration_ms": duration_ms,
        }
        if is_retryable_status(status_code):
            return TransientFailure(**failure)
        return PermanentFailure(**failure)

    def _transient(self, reason: FailureReason, error: str, started: float) -> TransientFailure:
        return TransientFailure(
            reason=reason,
            error=truncate(error, self.error_message_limit) or error,
            duration_ms=_elapsed_ms(started),
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


__all__ = [
    "DELIVERY_ID_HEADER",
    "EVENT_ID_HEADER",
    "EVENT_TYPE_HEADER",
    "SIGNATURE_HEADER",
    "DeliveryExecutor",
    "FailureReason",
    "Outcome",
    "PermanentFailure",
    "Success",
    "TransientFailure",
    "is_retryable_status",
    "serialize_envelope",
]
