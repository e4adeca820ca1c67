"""Network-resilience and client-state-caching core for eventsync."""

from eventsync.core.cache import MISS, CacheEntry, CacheStats, InFlightRequest, ResponseCache
from eventsync.core.connection import (
    ConnectionMonitor,
    ConnectionQuality,
    ConnectionState,
    HttpProbeSignalSource,
    ManualSignalSource,
    NetworkSignals,
    Subscription,
)
from eventsync.core.context import ResilienceContext
from eventsync.core.offline_queue import DrainReport, OfflineQueue, QueuedOperation
from eventsync.core.resilience import (
    ClassifiedError,
    ErrorCategory,
    ErrorClassifier,
    ErrorLog,
    ResilientOperationRunner,
    RetryableOperation,
    RetryPolicy,
    RetryScheduler,
    RetryStatus,
    RunOptions,
    RunOutcome,
    RunResult,
    Severity,
    classify,
)

__all__ = [
    "MISS",
    "CacheEntry",
    "CacheStats",
    "ClassifiedError",
    "ConnectionMonitor",
    "ConnectionQuality",
    "ConnectionState",
    "DrainReport",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorLog",
    "HttpProbeSignalSource",
    "InFlightRequest",
    "ManualSignalSource",
    "NetworkSignals",
    "OfflineQueue",
    "QueuedOperation",
    "ResilienceContext",
    "ResilientOperationRunner",
    "ResponseCache",
    "RetryPolicy",
    "RetryScheduler",
    "RetryStatus",
    "RetryableOperation",
    "RunOptions",
    "RunOutcome",
    "RunResult",
    "Severity",
    "Subscription",
    "classify",
]
