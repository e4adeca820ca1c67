"""Unified error hierarchy for eventsync.

All custom exception classes are defined in domain-specific modules within
this package. This __init__.py re-exports everything for convenient access.

Usage:
    from eventsync.core.errors import RetryExhaustedError, QueuePersistenceError
"""

# --- Resilience errors ---
from eventsync.core.errors.resilience import (
    AttemptTimeoutError,
    OperationFailedError,
    ResilienceError,
    RetryExhaustedError,
)

# --- Storage errors ---
from eventsync.core.errors.storage import (
    QueuePersistenceError,
    StorageError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)

__all__ = [
    # Resilience errors
    "ResilienceError",
    "AttemptTimeoutError",
    "OperationFailedError",
    "RetryExhaustedError",
    # Storage errors
    "StorageError",
    "StorageUnavailableError",
    "StorageQuotaExceededError",
    "QueuePersistenceError",
]
