"""Shared test helpers: scripted executor and canned attempt outcomes."""

from __future__ import annotations

from collections.abc import Iterable

from courier.delivery import (
    DeliveryExecutor,
    FailureReason,
    Outcome,
    PermanentFailure,
    Success,
    TransientFailure,
)
from courier.models import Event, Subscription


class ScriptedExecutor(DeliveryExecutor):
    """Executor that returns scripted outcomes instead of making HTTP calls.

    The last outcome repeats once the script runs out. Disabled
    subscriptions are still rejected by the real check.
    """

    def __init__(self, outcomes: Iterable[Outcome]) -> None:
        super().__init__()
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, str, str]] = []

    async def execute(self, subscription: Subscription, event: Event, delivery_id: str) -> Outcome:
        if not subscription.enabled:
            return await super().execute(subscription, event, delivery_id)
        self.calls.append((subscription.id, event.id, delivery_id))
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]


def ok(status_code: int = 200) -> Success:
    return Success(status_code=status_code, response_body="ok")


def server_error(status_code: int = 500) -> TransientFailure:
    return TransientFailure(
        reason=FailureReason.HTTP_STATUS,
        error=f"HTTP {status_code}",
        status_code=status_code,
    )


def timeout() -> TransientFailure:
    return TransientFailure(reason=FailureReason.TIMEOUT, error="Request timed out after 30s")


def client_error(status_code: int = 404) -> PermanentFailure:
    return PermanentFailure(
        reason=FailureReason.HTTP_STATUS,
        error=f"HTTP {status_code}",
        status_code=status_code,
    )
