"""Shared protocol for key-value storage backends."""

from __future__ import annotations

from typing import Any, Optional, Protocol


class KeyValueStorage(Protocol):
    """Protocol for persistent key-value storage.

    Values must be JSON-serializable. Implementations raise
    ``StorageError`` subclasses on failure.
    """

    durable: bool

    def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if the key is absent."""

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    def remove(self, key: str) -> bool:
        """Remove ``key``; return False if it was absent."""

    def list_keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with ``prefix``."""

    def check(self) -> None:
        """Raise ``StorageUnavailableError`` if the backend cannot be used."""
