"""Durable queue of operations deferred while offline.

Operations are persisted through a ``KeyValueStorage`` backend (one key per
operation) and indexed in memory. ``drain()`` replays them once connectivity
returns:

- entries are partitioned by ``kind``
- partitions replay concurrently; within a partition, strictly in enqueue order
- an entry is removed only after its replay succeeds
- a failed replay stops its partition and leaves the rest queued

Enqueue is idempotent per id: re-enqueueing keeps the original position and
replaces the payload (latest write wins).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError
from ulid import ULID

from eventsync.core.errors.storage import (
    QueuePersistenceError,
    StorageError,
)
from eventsync.core.observability import audit_log, get_metrics
from eventsync.core.storage.base import KeyValueStorage
from eventsync.core.storage.memory import MemoryKeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "queue:"

ReplayFunc = Callable[["QueuedOperation"], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueuedOperation(BaseModel):
    """An operation waiting for connectivity."""

    id: str = Field(default_factory=lambda: str(ULID()), description="Unique operation id")
    kind: str = Field(..., min_length=1, description="Partition key, e.g. 'submission.update'")
    payload: Any = Field(None, description="JSON-serializable operation payload")
    enqueued_at: datetime = Field(default_factory=_utcnow, description="First enqueue time")
    sequence: int = Field(0, ge=0, description="Position in arrival order, assigned by the queue")
    revision: int = Field(0, ge=0, description="Bumped each time the entry is replaced")
    attempts: int = Field(0, ge=0, description="Failed replay attempts so far")
    last_error: Optional[str] = Field(None, description="Message of the last replay failure")


@dataclass
class DrainReport:
    """Outcome of one ``drain()`` pass."""

    replayed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    remaining: int = 0
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class OfflineQueue:
    """Persistent, partitioned, idempotent operation queue.

    Storage I/O runs in a worker thread; writes are serialized on one lock and
    drains on another, so callers never need external locking.

    Example:
        >>> queue = OfflineQueue(FileKeyValueStorage(path))
        >>> await queue.enqueue(QueuedOperation(id="draft-1", kind="submission.save", payload={...}))
        >>> report = await queue.drain(replay)
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self._storage: KeyValueStorage = storage if storage is not None else MemoryKeyValueStorage()
        self._prefix = key_prefix
        self._entries: dict[str, QueuedOperation] = {}
        self._next_sequence = 0
        self._opened = False
        self._write_lock: Optional[asyncio.Lock] = None
        self._drain_lock: Optional[asyncio.Lock] = None
        self._open_lock: Optional[asyncio.Lock] = None

    # Locks are created lazily so the queue can be built outside a running loop.
    def _get_write_lock(self) -> asyncio.Lock:
        if self._write_lock is None:
            self._write_lock = asyncio.Lock()
        return self._write_lock

    def _get_drain_lock(self) -> asyncio.Lock:
        if self._drain_lock is None:
            self._drain_lock = asyncio.Lock()
        return self._drain_lock

    def _get_open_lock(self) -> asyncio.Lock:
        if self._open_lock is None:
            self._open_lock = asyncio.Lock()
        return self._open_lock

    @property
    def durable(self) -> bool:
        """Whether queued operations survive a process restart."""
        return bool(getattr(self._storage, "durable", False))

    def _key(self, op_id: str) -> str:
        return f"{self._prefix}{op_id}"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        """Load persisted entries. Safe to call more than once.

        Falls back to in-memory storage when the configured backend is
        unavailable, so a broken disk never stops the application from starting.
        """
        if self._opened:
            return
        async with self._get_open_lock():
            if self._opened:
                return
            try:
                await asyncio.to_thread(self._storage.check)
                loaded = await asyncio.to_thread(self._load_all)
            except StorageError as exc:
                logger.warning(
                    "Offline queue storage unavailable (%s); queued operations will not survive a restart",
                    exc,
                )
                self._storage = MemoryKeyValueStorage()
                loaded = []

            for op in loaded:
                self._entries[op.id] = op
            if self._entries:
                self._next_sequence = max(op.sequence for op in self._entries.values()) + 1
            self._opened = True
            logger.debug("Offline queue opened with %d pending operation(s)", len(self._entries))
            get_metrics().gauge("queue.pending", len(self._entries))

    def _load_all(self) -> list[QueuedOperation]:
        ops = []
        for key in self._storage.list_keys(self._prefix):
            try:
                data = self._storage.get(key)
            except StorageError as exc:
                logger.warning("Skipping unreadable queued operation %s: %s", key, exc)
                continue
            if data is None:
                continue
            try:
                ops.append(QueuedOperation.model_validate(data))
            except ValidationError as exc:
                logger.warning("Skipping corrupt queued operation %s: %s", key, exc)
        return ops

    # =========================================================================
    # Mutation
    # =========================================================================

    async def enqueue(self, op: QueuedOperation) -> QueuedOperation:
        """Persist ``op`` and add it to the queue.

        Re-enqueueing an existing id replaces its kind and payload but keeps
        its original position.

        Returns:
            The stored entry (with sequence and revision assigned).

        Raises:
            QueuePersistenceError: The operation could not be stored and was NOT queued.
        """
        await self.open()
        async with self._get_write_lock():
            existing = self._entries.get(op.id)
            if existing is not None:
                stored = op.model_copy(
                    update={
                        "sequence": existing.sequence,
                        "revision": existing.revision + 1,
                        "enqueued_at": existing.enqueued_at,
                        "attempts": 0,
                        "last_error": None,
                    }
                )
            else:
                stored = op.model_copy(update={"sequence": self._next_sequence, "revision": 0})

            try:
                data = stored.model_dump(mode="json")
                await asyncio.to_thread(self._storage.set, self._key(stored.id), data)
            except (StorageError, ValueError) as exc:
                get_metrics().counter("queue.persist_failed", labels={"kind": stored.kind})
                raise QueuePersistenceError(stored.id, str(exc)) from exc

            if existing is None:
                self._next_sequence += 1
            self._entries[stored.id] = stored

        logger.debug(
            "Queued %s (%s) at position %d, revision %d",
            stored.id,
            stored.kind,
            stored.sequence,
            stored.revision,
        )
        get_metrics().counter("queue.enqueued", labels={"kind": stored.kind})
        return stored

    async def discard(self, op_id: str) -> bool:
        """Remove an entry without replaying it. Returns False if absent."""
        await self.open()
        async with self._get_write_lock():
            if op_id not in self._entries:
                return False
            await asyncio.to_thread(self._storage.remove, self._key(op_id))
            del self._entries[op_id]
        return True

    async def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        await self.open()
        async with self._get_write_lock():
            ids = list(self._entries)
            for op_id in ids:
                await asyncio.to_thread(self._storage.remove, self._key(op_id))
            self._entries.clear()
        return len(ids)

    async def purge_older_than(self, max_age_seconds: float) -> list[str]:
        """Discard entries enqueued more than ``max_age_seconds`` ago.

        Returns:
            Ids of discarded entries.
        """
        cutoff = _utcnow() - timedelta(seconds=max_age_seconds)
        expired = [op.id for op in self.pending() if op.enqueued_at < cutoff]
        purged = []
        for op_id in expired:
            if await self.discard(op_id):
                purged.append(op_id)
        if purged:
            logger.info("Purged %d expired queued operation(s): %s", len(purged), ", ".join(purged))
        return purged

    # =========================================================================
    # Inspection
    # =========================================================================

    def pending(self, kind: Optional[str] = None) -> list[QueuedOperation]:
        """Entries in enqueue order, optionally for a single kind."""
        ops = sorted(self._entries.values(), key=lambda op: op.sequence)
        if kind is not None:
            ops = [op for op in ops if op.kind == kind]
        return ops

    def get(self, op_id: str) -> Optional[QueuedOperation]:
        return self._entries.get(op_id)

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Replay
    # =========================================================================

    async def drain(self, replay_fn: ReplayFunc) -> DrainReport:
        """Replay queued operations.

        Args:
            replay_fn: Async callable invoked with each ``QueuedOperation``;
                raising marks the replay as failed.

        Returns:
            A DrainReport. If another drain is already running, returns
            immediately with ``skipped=True``.
        """
        await self.open()
        drain_lock = self._get_drain_lock()
        if drain_lock.locked():
            logger.debug("Drain already in progress; skipping")
            return DrainReport(remaining=len(self._entries), skipped=True)

        async with drain_lock:
            start = time.monotonic()
            report = DrainReport()
            partitions: dict[str, list[QueuedOperation]] = defaultdict(list)
            for op in self.pending():
                partitions[op.kind].append(op)

            if partitions:
                # Every partition settles before the drain lock is released
                results = await asyncio.gather(
                    *(self._drain_partition(kind, ops, replay_fn, report) for kind, ops in partitions.items()),
                    return_exceptions=True,
                )
                for kind, result in zip(partitions, results):
                    if isinstance(result, BaseException):
                        logger.error("Drain of %s partition aborted: %s", kind, result, exc_info=result)

            report.remaining = len(self._entries)
            duration_ms = (time.monotonic() - start) * 1000
            if report.replayed or report.failed:
                logger.info(
                    "Drained offline queue: %d replayed, %d failed, %d remaining (%.1fms)",
                    len(report.replayed),
                    len(report.failed),
                    report.remaining,
                    duration_ms,
                )
            get_metrics().timer("queue.drain", duration_ms)
            get_metrics().gauge("queue.pending", report.remaining)
            return report

    async def _drain_partition(
        self,
        kind: str,
        ops: list[QueuedOperation],
        replay_fn: ReplayFunc,
        report: DrainReport,
    ) -> None:
        for op in ops:
            current = self._entries.get(op.id)
            if current is None:
                # Discarded while the drain was running
                continue
            try:
                await replay_fn(current)
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                report.failed[current.id] = message
                await self._record_failure(current, message)
                audit_log(
                    "queue_replay_failed",
                    operation_id=current.id,
                    kind=kind,
                    attempts=current.attempts + 1,
                    error_message=message[:200],
                )
                logger.warning(
                    "Replay of %s (%s) failed; %s partition paused: %s",
                    current.id,
                    kind,
                    kind,
                    message,
                )
                return

            try:
                await self._remove_replayed(current)
            except StorageError as exc:
                # Replayed but still stored; the partition waits for the next drain
                report.failed[current.id] = f"Replayed but could not be removed: {exc}"
                get_metrics().counter("queue.remove_failed", labels={"kind": kind})
                logger.warning(
                    "Replayed %s (%s) but could not remove it from storage; %s partition paused: %s",
                    current.id,
                    kind,
                    kind,
                    exc,
                )
                return

            report.replayed.append(current.id)
            audit_log("queue_replayed", operation_id=current.id, kind=kind)
            get_metrics().counter("queue.replayed", labels={"kind": kind})

    async def _remove_replayed(self, replayed: QueuedOperation) -> None:
        async with self._get_write_lock():
            current = self._entries.get(replayed.id)
            if current is None:
                return
            if current.revision != replayed.revision:
                # Replaced while replaying; the newer payload stays queued
                logger.debug("Keeping %s: replaced during replay (revision %d)", current.id, current.revision)
                return
            await asyncio.to_thread(self._storage.remove, self._key(current.id))
            del self._entries[current.id]

    async def _record_failure(self, failed: QueuedOperation, message: str) -> None:
        async with self._get_write_lock():
            current = self._entries.get(failed.id)
            if current is None or current.revision != failed.revision:
                return
            updated = current.model_copy(update={"attempts": current.attempts + 1, "last_error": message})
            try:
                await asyncio.to_thread(self._storage.set, self._key(updated.id), updated.model_dump(mode="json"))
            except StorageError as exc:
                logger.warning("Could not persist replay failure for %s: %s", updated.id, exc)
            self._entries[updated.id] = updated


__all__ = [
    "DEFAULT_KEY_PREFIX",
    "DrainReport",
    "OfflineQueue",
    "QueuedOperation",
    "ReplayFunc",
]
