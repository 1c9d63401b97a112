"""Webhook delivery engine: fan-out, attempts, and retry scheduling."""

from .dispatcher import TEST_EVENT_TYPE, FanoutDispatcher, FanoutResult
from .executor import (
    DeliveryExecutor,
    FailureReason,
    Outcome,
    PermanentFailure,
    Success,
    TransientFailure,
    serialize_envelope,
)
from .scheduler import ProcessAction, ProcessResult, RetryScheduler, backoff_delay

__all__ = [
    "TEST_EVENT_TYPE",
    "DeliveryExecutor",
    "FailureReason",
    "FanoutDispatcher",
    "FanoutResult",
    "Outcome",
    "PermanentFailure",
    "ProcessAction",
    "ProcessResult",
    "RetryScheduler",
    "Success",
    "TransientFailure",
    "backoff_delay",
    "serialize_envelope",
]
