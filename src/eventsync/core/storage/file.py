"""File-based key-value storage.

Provides durable persistence for the offline queue with:
- One JSON document per key
- Atomic writes (temp+fsync+rename)
- Per-key file locking with timeout
- Optional byte quota
"""

from __future__ import annotations

import base64
import errno
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock, Timeout

from eventsync.core.errors.storage import (
    StorageError,
    StorageQuotaExceededError,
    StorageUnavailableError,
)

logger = logging.getLogger(__name__)

# Default storage path
DEFAULT_STORAGE_PATH = Path.home() / ".eventsync" / "storage"

# Lock acquisition timeout (seconds)
LOCK_ACQUISITION_TIMEOUT = 5

_SUFFIX = ".json"


def encode_key(key: str) -> str:
    """Encode a storage key as a reversible, filesystem-safe file stem."""
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii").rstrip("=")


def decode_key(stem: str) -> str:
    """Inverse of :func:`encode_key`."""
    padding = "=" * (-len(stem) % 4)
    return base64.urlsafe_b64decode(stem + padding).decode("utf-8")


class FileKeyValueStorage:
    """Directory-backed storage with atomic writes and file locking."""

    durable = True

    def __init__(
        self,
        storage_path: Optional[Path] = None,
        *,
        max_bytes: Optional[int] = None,
        lock_timeout: float = LOCK_ACQUISITION_TIMEOUT,
    ) -> None:
        """Initialize storage backend.

        Args:
            storage_path: Directory holding one file per key
            max_bytes: Optional quota for the sum of stored file sizes
            lock_timeout: Seconds to wait for a per-key lock

        Raises:
            StorageUnavailableError: If the directory cannot be created
        """
        self.storage_path = Path(storage_path) if storage_path is not None else DEFAULT_STORAGE_PATH
        self.locks_path = self.storage_path / ".locks"
        self.max_bytes = max_bytes
        self.lock_timeout = lock_timeout
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        """Create storage directories if they don't exist."""
        try:
            self.storage_path.mkdir(parents=True, exist_ok=True)
            self.locks_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageUnavailableError(
                f"Cannot create storage directory {self.storage_path}: {exc}"
            ) from exc

    def _get_path(self, key: str) -> Path:
        return self.storage_path / f"{encode_key(key)}{_SUFFIX}"

    def _get_lock_path(self, key: str) -> Path:
        return self.locks_path / f"{encode_key(key)}.lock"

    def _lock(self, key: str) -> FileLock:
        return FileLock(self._get_lock_path(key), timeout=self.lock_timeout)

    def _used_bytes(self, exclude: Optional[Path] = None) -> int:
        total = 0
        for path in self.storage_path.glob(f"*{_SUFFIX}"):
            if path == exclude:
                continue
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    def get(self, key: str) -> Optional[Any]:
        path = self._get_path(key)
        if not path.exists():
            return None
        try:
            with self._lock(key):
                if not path.exists():
                    return None
                return json.loads(path.read_text(encoding="utf-8"))
        except Timeout as exc:
            raise StorageError(f"Timed out locking {key!r}") from exc
        except json.JSONDecodeError as exc:
            raise StorageError(f"Stored value for {key!r} is corrupt: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {key!r}: {exc}") from exc

    def set(self, key: str, value: Any) -> None:
        """Store a value with atomic write and locking.

        Raises:
            StorageQuotaExceededError: If the write would exceed ``max_bytes``
                or the disk is full
            StorageError: On serialization, locking or I/O failure
        """
        try:
            data = json.dumps(value, indent=2)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for {key!r} is not JSON-serializable: {exc}") from exc

        path = self._get_path(key)
        encoded = data.encode("utf-8")
        try:
            with self._lock(key):
                if self.max_bytes is not None:
                    used = self._used_bytes(exclude=path)
                    if used + len(encoded) > self.max_bytes:
                        raise StorageQuotaExceededError(
                            f"Writing {key!r} would exceed storage quota of {self.max_bytes} bytes",
                            limit=self.max_bytes,
                        )
                self._atomic_write(path, encoded)
        except Timeout as exc:
            raise StorageError(f"Timed out locking {key!r}") from exc
        except OSError as exc:
            if exc.errno in (errno.ENOSPC, errno.EDQUOT):
                raise StorageQuotaExceededError(f"Disk full while writing {key!r}") from exc
            raise StorageError(f"Failed to write {key!r}: {exc}") from exc

        logger.debug("Stored %s at %s", key, path)

    def _atomic_write(self, path: Path, encoded: bytes) -> None:
        # Atomic write: temp file + fsync + rename
        fd, temp_path = tempfile.mkstemp(
            dir=self.storage_path,
            prefix=".",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(encoded)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def remove(self, key: str) -> bool:
        path = self._get_path(key)
        if not path.exists():
            return False
        try:
            with self._lock(key):
                path.unlink()
        except FileNotFoundError:
            return False
        except Timeout as exc:
            raise StorageError(f"Timed out locking {key!r}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to remove {key!r}: {exc}") from exc

        self._cleanup_lock_file(self._get_lock_path(key))
        return True

    def _cleanup_lock_file(self, lock_path: Path) -> None:
        try:
            lock_path.unlink()
        except OSError:
            pass  # May still be in use or already gone

    def list_keys(self, prefix: str = "") -> list[str]:
        keys = []
        for path in self.storage_path.glob(f"*{_SUFFIX}"):
            try:
                key = decode_key(path.stem)
            except ValueError:
                logger.warning("Ignoring unrecognized storage file %s", path.name)
                continue
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def check(self) -> None:
        """Verify the directory is writable."""
        if not self.storage_path.is_dir() or not os.access(self.storage_path, os.W_OK):
            raise StorageUnavailableError(f"Storage directory {self.storage_path} is not writable")
