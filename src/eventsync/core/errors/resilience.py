"""Resilience error classes.

Raised by the retry scheduler when an operation cannot be completed. Each
error carries the last ``ClassifiedError`` so callers can decide how to
present the failure without re-inspecting the raw cause.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from eventsync.core.resilience.models import ClassifiedError


class ResilienceError(Exception):
    """Base class for failures surfaced by the resilience layer."""


class AttemptTimeoutError(ResilienceError):
    """A single attempt exceeded its per-attempt timeout.

    Attributes:
        timeout_ms: The per-attempt timeout that was exceeded.
        attempt: 1-based attempt number that timed out.
    """

    def __init__(
        self,
        message: str,
        timeout_ms: Optional[int] = None,
        attempt: Optional[int] = None,
    ):
        super().__init__(message)
        self.timeout_ms = timeout_ms
        self.attempt = attempt


class OperationFailedError(ResilienceError):
    """Operation failed with a non-retryable error.

    Attributes:
        classified: Classification of the last failure.
        attempts: Number of attempts made.
        operation: Optional label of the operation.
    """

    def __init__(
        self,
        message: str,
        classified: "ClassifiedError",
        attempts: int,
        operation: Optional[str] = None,
    ):
        super().__init__(message)
        self.classified = classified
        self.attempts = attempts
        self.operation = operation


class RetryExhaustedError(OperationFailedError):
    """Operation used every attempt its policy allowed."""
