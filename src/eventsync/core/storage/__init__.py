"""Key-value storage backends used by the offline queue."""

from eventsync.core.storage.base import KeyValueStorage
from eventsync.core.storage.file import DEFAULT_STORAGE_PATH, FileKeyValueStorage
from eventsync.core.storage.memory import MemoryKeyValueStorage

__all__ = [
    "DEFAULT_STORAGE_PATH",
    "FileKeyValueStorage",
    "KeyValueStorage",
    "MemoryKeyValueStorage",
]
