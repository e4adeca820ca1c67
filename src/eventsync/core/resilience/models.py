"""Resilience data models, enums, and protocols.

Defines the core types used across the resilience sub-package:
- ErrorCategory / Severity enums for failure classification
- ClassifiedError, the immutable result of classifying a failure
- RetryPolicy for per-operation retry tuning
- RetryStatus for the lifecycle of a scheduled operation
- SleepFunc protocol for injectable async sleep
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol


class ErrorCategory(str, Enum):
    """Actionable category of a failure."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    PERMISSION = "permission"
    VALIDATION = "validation"
    SERVER = "server"
    CLIENT = "client"
    UNKNOWN = "unknown"


class Severity(str, Enum):
    """How serious a failure is for the caller."""

    FATAL = "fatal"
    WARNING = "warning"
    INFO = "info"


class RetryStatus(str, Enum):
    """Lifecycle status of a RetryableOperation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


TERMINAL_RETRY_STATUSES = frozenset(
    {RetryStatus.SUCCEEDED, RetryStatus.FAILED, RetryStatus.EXHAUSTED}
)


@dataclass(frozen=True)
class ClassifiedError:
    """Classification result for a single failure.

    ``raw_cause`` is the original value handed to the classifier and is kept
    opaque. ``rule`` names the classification rule that matched.
    """

    category: ErrorCategory
    severity: Severity
    retryable: bool
    raw_cause: Any = None
    message: str = ""
    status: Optional[int] = None
    code: Optional[str] = None
    rule: str = "unknown"

    @property
    def needs_investigation(self) -> bool:
        """Unknown failures are surfaced immediately but flagged."""
        return self.category == ErrorCategory.UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        cause = self.raw_cause
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "rule": self.rule,
            "cause_type": type(cause).__name__ if cause is not None else None,
        }


@dataclass(frozen=True)
class RetryPolicy:
    """Per-operation retry configuration.

    Delays are expressed in milliseconds. The wait after the n-th failed
    attempt is ``min(base_delay_ms * backoff_multiplier ** (n - 1), max_delay_ms)``
    plus up to ``jitter_ms`` of random extra delay (never less).
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    timeout_ms: int = 10_000
    max_delay_ms: int = 30_000
    jitter_ms: int = 0

    def __post_init__(self) -> None:
        if isinstance(self.max_attempts, bool) or not isinstance(self.max_attempts, int):
            raise ValueError(f"max_attempts must be an int, got {self.max_attempts!r}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.backoff_multiplier < 1:
            raise ValueError(f"backoff_multiplier must be >= 1, got {self.backoff_multiplier}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be > 0, got {self.timeout_ms}")
        if self.max_delay_ms < 0:
            raise ValueError(f"max_delay_ms must be >= 0, got {self.max_delay_ms}")
        if self.jitter_ms < 0:
            raise ValueError(f"jitter_ms must be >= 0, got {self.jitter_ms}")

    def delay_ms_for(self, failed_attempts: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after ``failed_attempts`` attempts have failed."""
        exponent = max(failed_attempts - 1, 0)
        try:
            delay = min(self.base_delay_ms * (self.backoff_multiplier**exponent), self.max_delay_ms)
        except OverflowError:
            # Past float range the cap applies
            delay = self.max_delay_ms
        if self.jitter_ms:
            delay += (rng or random).random() * self.jitter_ms
        return delay


class SleepFunc(Protocol):
    """Protocol for injectable sleep function."""

    async def __call__(self, seconds: float) -> None: ...
