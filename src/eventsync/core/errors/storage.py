"""Storage and offline-queue error classes."""

from __future__ import annotations

from typing import Optional


class StorageError(Exception):
    """Key-value storage operation failed."""


class StorageUnavailableError(StorageError):
    """Storage backend cannot be used at all (missing, unwritable, disabled)."""


class StorageQuotaExceededError(StorageError):
    """Write rejected because the storage quota is exhausted.

    Attributes:
        limit: Configured limit (bytes or entries) that was hit.
    """

    def __init__(self, message: str, limit: Optional[int] = None):
        super().__init__(message)
        self.limit = limit


class QueuePersistenceError(StorageError):
    """An operation could not be safely stored in the offline queue.

    The operation was NOT queued; callers must surface this.
    """

    def __init__(self, operation_id: str, reason: str) -> None:
        self.operation_id = operation_id
        self.reason = reason
        super().__init__(f"Operation {operation_id} was not queued: {reason}")
