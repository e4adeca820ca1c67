"""Failure classification, retry scheduling and resilient execution.

Usage:
    from eventsync.core.resilience import RetryPolicy, RetryScheduler, classify

    scheduler = RetryScheduler()
    result = await scheduler.run(fetch_team, RetryPolicy(max_attempts=4, base_delay_ms=250))
"""

from eventsync.core.resilience.classifier import (
    DEFAULT_RULES,
    ClassificationRule,
    ErrorClassifier,
    ErrorFacts,
    classify,
    extract_facts,
)
from eventsync.core.resilience.error_log import ErrorLog, ErrorRecord
from eventsync.core.resilience.models import (
    TERMINAL_RETRY_STATUSES,
    ClassifiedError,
    ErrorCategory,
    RetryPolicy,
    RetryStatus,
    Severity,
    SleepFunc,
)
from eventsync.core.resilience.retry import RetryableOperation, RetryHook, RetryScheduler
from eventsync.core.resilience.runner import (
    ReplayHandler,
    ResilientOperationRunner,
    RunOptions,
    RunOutcome,
    RunResult,
    RunState,
)

__all__ = [
    # Classification
    "ClassificationRule",
    "ClassifiedError",
    "DEFAULT_RULES",
    "ErrorCategory",
    "ErrorClassifier",
    "ErrorFacts",
    "Severity",
    "classify",
    "extract_facts",
    # Retry
    "RetryHook",
    "RetryPolicy",
    "RetryScheduler",
    "RetryStatus",
    "RetryableOperation",
    "SleepFunc",
    "TERMINAL_RETRY_STATUSES",
    # Error log
    "ErrorLog",
    "ErrorRecord",
    # Runner
    "ReplayHandler",
    "ResilientOperationRunner",
    "RunOptions",
    "RunOutcome",
    "RunResult",
    "RunState",
]
