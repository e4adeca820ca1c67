"""Bounded in-memory log of classified failures.

Keeps the most recent failures (newest first) so the embedding application
can show a recent-errors panel and so ``unknown`` failures can be picked up
for investigation.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ulid import ULID

from eventsync.core.resilience.models import ClassifiedError, ErrorCategory

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 100


@dataclass(frozen=True)
class ErrorRecord:
    """One recorded failure."""

    error: ClassifiedError
    label: Optional[str] = None
    attempts: int = 1
    id: str = field(default_factory=lambda: str(ULID()))
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recorded_at": self.recorded_at.isoformat(),
            "label": self.label,
            "attempts": self.attempts,
            "needs_investigation": self.error.needs_investigation,
            **self.error.to_dict(),
        }


class ErrorLog:
    """Thread-safe, bounded, newest-first failure log."""

    def __init__(self, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        if max_records < 1:
            raise ValueError(f"max_records must be >= 1, got {max_records}")
        self.max_records = max_records
        self._records: deque[ErrorRecord] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def record(
        self,
        error: ClassifiedError,
        label: Optional[str] = None,
        attempts: int = 1,
    ) -> ErrorRecord:
        """Add a failure, dropping the oldest record when full."""
        entry = ErrorRecord(error=error, label=label, attempts=attempts)
        with self._lock:
            self._records.appendleft(entry)
        if error.needs_investigation:
            logger.warning(
                "Unclassified failure in %s flagged for investigation: %s",
                label or "<anonymous>",
                error.message or type(error.raw_cause).__name__,
            )
        return entry

    def records(
        self,
        limit: Optional[int] = None,
        category: Optional[ErrorCategory] = None,
    ) -> list[ErrorRecord]:
        """Return records newest first, optionally filtered and limited."""
        with self._lock:
            items = list(self._records)
        if category is not None:
            items = [r for r in items if r.error.category == category]
        return items[:limit] if limit is not None else items

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
