"""Error taxonomy for the device scaler."""

from __future__ import annotations

from typing import Optional


class DDSError(Exception):
    """Base class for every error raised by the controller."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class ConfigurationError(DDSError):
    """Bad policy document or node label. Fatal for the cycle."""


class TransportError(DDSError):
    """A list/get call against the cluster API failed."""


class MutationError(DDSError):
    """A create/patch failed for a reason other than a write conflict."""


class ConflictError(DDSError):
    """Optimistic concurrency collision on a write."""


class RetriesExhaustedError(ConflictError):
    """Every attempt of a retried write hit a conflict."""

    def __init__(self, description: str, attempts: int, last_error: Optional[Exception]) -> None:
        super().__init__(
            f"{description}: max retries ({attempts}) reached, last error: {last_error}",
            status=getattr(last_error, "status", None),
        )
        self.attempts = attempts
        self.last_error = last_error


def is_conflict(error: Exception) -> bool:
    return isinstance(error, ConflictError) and not isinstance(error, RetriesExhaustedError)
