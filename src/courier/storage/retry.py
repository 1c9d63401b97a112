"""Retry utilities for storage operations.

Provides exponential backoff retry logic for connection-level database
errors, and wraps whatever is left into ``StorageError`` so callers above
the storage layer never see SQLAlchemy exceptions.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from courier.exceptions import StorageError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    """Log retry attempts with context.

    Args:
        retry_state: Current retry state from tenacity.
    """
    logger.warning(
        "Retrying storage operation",
        extra={
            "attempt": retry_state.attempt_number,
            "fn_name": retry_state.fn.__name__ if retry_state.fn else "unknown",
            "exception": str(retry_state.outcome.exception()) if retry_state.outcome else None,
        },
    )


# Only connection-level failures are retried; constraint violations and
# programming errors surface on the first attempt.
storage_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
    retry=retry_if_exception_type(
        (
            OperationalError,  # Connection dropped, database locked, server gone
            InterfaceError,  # Driver-level connection failure
        )
    ),
    before_sleep=_log_retry,
    reraise=True,
)


def storage_operation(fn: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
    """Apply ``storage_retry`` and convert remaining database errors to StorageError."""
    retried = storage_retry(fn)

    @functools.wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        try:
            return await retried(*args, **kwargs)
        except SQLAlchemyError as e:
            raise StorageError(f"{fn.__name__} failed: {e}") from e

    return wrapper


__all__ = ["storage_operation", "storage_retry"]
