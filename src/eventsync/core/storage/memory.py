"""In-memory key-value storage, used for tests and as the non-durable fallback."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional

from eventsync.core.errors.storage import StorageError, StorageQuotaExceededError

logger = logging.getLogger(__name__)


class MemoryKeyValueStorage:
    """Thread-safe dict-backed storage.

    Values are stored as JSON text so non-serializable payloads fail the
    same way they would against durable storage, and callers never share
    mutable state with the store.
    """

    durable = False

    def __init__(self, max_entries: Optional[int] = None) -> None:
        self.max_entries = max_entries
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        try:
            raw = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {exc}") from exc
        with self._lock:
            if (
                self.max_entries is not None
                and key not in self._data
                and len(self._data) >= self.max_entries
            ):
                raise StorageQuotaExceededError(
                    f"Storage is full ({self.max_entries} entries)",
                    limit=self.max_entries,
                )
            self._data[key] = raw

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def check(self) -> None:
        return None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
