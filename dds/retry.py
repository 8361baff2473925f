"""Bounded retry for optimistic-concurrency writes."""

from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from dds.errors import RetriesExhaustedError, is_conflict

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 2


def retry_on_conflict(
    operation: Callable[[], T],
    description: str = "write",
    attempts: int = MAX_RETRIES,
    is_retryable: Callable[[Exception], bool] = is_conflict,
) -> T:
    """
    Run `operation` until it succeeds, retrying only retryable errors.

    The operation must re-read whatever it writes on every call so a retry
    never reuses a stale object.

    Args:
        operation: Zero-argument callable performing read-then-write
        description: Used in log lines and in the exhausted-retries error
        attempts: Total number of calls allowed
        is_retryable: Predicate deciding whether an error earns another attempt

    Returns:
        Whatever the operation returned

    Raises:
        RetriesExhaustedError: If every attempt failed with a retryable error
        Exception: The first non-retryable error, unchanged
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e):
                raise
            last_error = e
            logger.warning(f"Conflict on {description} (attempt {attempt}/{attempts}): {e}")

    raise RetriesExhaustedError(description, attempts, last_error)
