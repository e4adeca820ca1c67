"""Resilient operation runner.

Orchestrates one remote operation per ``run()`` call::

    idle -> checking_connectivity -> queued                        (offline and deferrable)
    idle -> checking_connectivity -> executing -> retrying* -> succeeded | failed | exhausted

Terminal failures come back as a ``RunResult`` carrying the ``ClassifiedError``;
the only exception ``run()`` raises for a failed operation is
``QueuePersistenceError``, when a deferrable operation could not be queued.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

from eventsync.core.cache import ResponseCache
from eventsync.core.connection.monitor import ConnectionMonitor
from eventsync.core.errors.resilience import OperationFailedError, RetryExhaustedError
from eventsync.core.observability import audit_log, get_metrics
from eventsync.core.offline_queue import OfflineQueue, QueuedOperation
from eventsync.core.resilience.error_log import ErrorLog
from eventsync.core.resilience.models import ClassifiedError, RetryPolicy
from eventsync.core.resilience.retry import RetryableOperation, RetryScheduler

logger = logging.getLogger(__name__)

T = TypeVar("T")

ReplayHandler = Callable[[Any], Awaitable[Any]]


class RunOutcome(str, Enum):
    """Terminal outcome of ``run()``."""

    SUCCEEDED = "succeeded"
    DEFERRED = "deferred"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


class RunState(str, Enum):
    """States visited by a single ``run()`` call."""

    IDLE = "idle"
    CHECKING_CONNECTIVITY = "checking_connectivity"
    QUEUED = "queued"
    EXECUTING = "executing"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RunOptions:
    """Per-call options for ``ResilientOperationRunner.run``.

    Attributes:
        defer_when_offline: Queue instead of executing while offline
        retry_policy: Overrides the runner's default policy
        cache_key: Write the result through to the cache on success
        cache_ttl_ms: TTL for the cached result
        queue_kind: Partition for the deferred operation (required to defer)
        queue_payload: JSON-serializable payload replayed later
        queue_id: Stable id; re-deferring the same id replaces the payload
        label: Name used in logs and the error log
    """

    defer_when_offline: bool = False
    retry_policy: Optional[RetryPolicy] = None
    cache_key: Optional[str] = None
    cache_ttl_ms: Optional[int] = None
    queue_kind: Optional[str] = None
    queue_payload: Any = None
    queue_id: Optional[str] = None
    label: Optional[str] = None


@dataclass
class RunResult(Generic[T]):
    """Structured outcome of ``run()``."""

    outcome: RunOutcome
    value: Optional[T] = None
    error: Optional[ClassifiedError] = None
    attempts: int = 0
    queued: Optional[QueuedOperation] = None
    trace: List[RunState] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome == RunOutcome.SUCCEEDED

    @property
    def deferred(self) -> bool:
        return self.outcome == RunOutcome.DEFERRED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "attempts": self.attempts,
            "error": self.error.to_dict() if self.error else None,
            "queued_id": self.queued.id if self.queued else None,
            "trace": [state.value for state in self.trace],
            "elapsed_ms": round(self.elapsed_ms, 1),
        }


class ResilientOperationRunner:
    """Wraps remote operations with connectivity checks, retries, deferral and caching.

    Holds no per-call state: everything observable about a call is in its
    ``RunResult`` or in the monitor/queue/cache it was given.
    """

    def __init__(
        self,
        monitor: ConnectionMonitor,
        scheduler: Optional[RetryScheduler] = None,
        queue: Optional[OfflineQueue] = None,
        cache: Optional[ResponseCache] = None,
        error_log: Optional[ErrorLog] = None,
        default_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self.monitor = monitor
        self.scheduler = scheduler or RetryScheduler()
        self.queue = queue if queue is not None else OfflineQueue()
        self.cache = cache
        self.error_log = error_log
        self.default_policy = default_policy or RetryPolicy()
        self._handlers: Dict[str, ReplayHandler] = {}

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RunOptions] = None,
    ) -> RunResult[T]:
        """Run ``operation`` resiliently.

        Raises:
            ValueError: Deferral requested without ``queue_kind``.
            QueuePersistenceError: Offline and deferrable, but the operation
                could not be queued.
        """
        options = options or RunOptions()
        if options.defer_when_offline and not options.queue_kind:
            raise ValueError("queue_kind is required when defer_when_offline is set")

        start = time.monotonic()
        trace = [RunState.IDLE, RunState.CHECKING_CONNECTIVITY]
        label = options.label or options.queue_kind

        if options.defer_when_offline and not self.monitor.is_online:
            queued = await self._defer(options)
            trace.append(RunState.QUEUED)
            return RunResult(
                outcome=RunOutcome.DEFERRED,
                queued=queued,
                trace=trace,
                elapsed_ms=(time.monotonic() - start) * 1000,
            )

        trace.append(RunState.EXECUTING)

        def on_retry(handle: RetryableOperation, error: ClassifiedError, delay_ms: float) -> None:
            trace.append(RunState.RETRYING)

        policy = options.retry_policy or self.default_policy
        handle = self.scheduler.schedule(operation, policy, on_retry=on_retry, label=label)
        try:
            value = await handle.execute()
        except OperationFailedError as exc:
            outcome = RunOutcome.EXHAUSTED if isinstance(exc, RetryExhaustedError) else RunOutcome.FAILED
            trace.append(RunState(outcome.value))
            return self._failed(outcome, exc, label, trace, start)

        trace.append(RunState.SUCCEEDED)
        if options.cache_key is not None and self.cache is not None:
            self.cache.set(options.cache_key, value, options.cache_ttl_ms)
        elapsed_ms = (time.monotonic() - start) * 1000
        get_metrics().timer("run.duration", elapsed_ms, labels={"outcome": RunOutcome.SUCCEEDED.value})
        return RunResult(
            outcome=RunOutcome.SUCCEEDED,
            value=value,
            attempts=handle.attempt_count,
            trace=trace,
            elapsed_ms=elapsed_ms,
        )

    async def _defer(self, options: RunOptions) -> QueuedOperation:
        fields: Dict[str, Any] = {"kind": options.queue_kind, "payload": options.queue_payload}
        if options.queue_id is not None:
            fields["id"] = options.queue_id
        queued = await self.queue.enqueue(QueuedOperation(**fields))
        audit_log(
            "operation_deferred",
            operation=options.label,
            operation_id=queued.id,
            kind=queued.kind,
            revision=queued.revision,
        )
        get_metrics().counter("run.deferred", labels={"kind": queued.kind})
        return queued

    def _failed(
        self,
        outcome: RunOutcome,
        exc: OperationFailedError,
        label: Optional[str],
        trace: List[RunState],
        start: float,
    ) -> RunResult[Any]:
        error = exc.classified
        if self.error_log is not None:
            self.error_log.record(error, label=label, attempts=exc.attempts)
        audit_log(
            "operation_failed",
            operation=label,
            outcome=outcome.value,
            attempts=exc.attempts,
            error_type=error.category.value,
            severity=error.severity.value,
            needs_investigation=error.needs_investigation,
        )
        elapsed_ms = (time.monotonic() - start) * 1000
        get_metrics().timer("run.duration", elapsed_ms, labels={"outcome": outcome.value})
        return RunResult(
            outcome=outcome,
            error=error,
            attempts=exc.attempts,
            trace=trace,
            elapsed_ms=elapsed_ms,
        )

    # =========================================================================
    # Replay
    # =========================================================================

    def register_handler(self, kind: str, handler: ReplayHandler) -> ReplayHandler:
        """Register the coroutine that replays queued operations of ``kind``.

        The handler is called with the operation's payload.
        """
        self._handlers[kind] = handler
        return handler

    def has_handler(self, kind: str) -> bool:
        return kind in self._handlers

    async def replay(self, op: QueuedOperation) -> Any:
        """Replay one queued operation through the scheduler.

        Intended as the ``replay_fn`` of ``OfflineQueue.drain``.

        Raises:
            LookupError: No handler is registered for ``op.kind``.
            OperationFailedError: The replay failed; the entry stays queued.
        """
        handler = self._handlers.get(op.kind)
        if handler is None:
            raise LookupError(f"No replay handler registered for kind {op.kind!r}")
        label = f"replay:{op.kind}:{op.id}"
        try:
            return await self.scheduler.run(lambda: handler(op.payload), self.default_policy, label=label)
        except OperationFailedError as exc:
            if self.error_log is not None:
                self.error_log.record(exc.classified, label=label, attempts=exc.attempts)
            raise
