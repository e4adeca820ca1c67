"""Audit logging for resilience events.

Provides structured audit logging of retries, deferrals, queue replays and
connectivity changes on a dedicated logger so they can be filtered apart
from ordinary diagnostics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events emitted by the resilience layer."""

    RETRY_ATTEMPT = "retry_attempt"
    ATTEMPT_TIMEOUT = "attempt_timeout"
    OPERATION_DEFERRED = "operation_deferred"
    OPERATION_FAILED = "operation_failed"
    QUEUE_REPLAYED = "queue_replayed"
    QUEUE_REPLAY_FAILED = "queue_replay_failed"
    CONNECTIVITY_CHANGE = "connectivity_change"
    CACHE_REVALIDATION_FAILED = "cache_revalidation_failed"
    OTHER = "other"


@dataclass
class AuditEvent:
    """Structured audit event."""

    event_type: AuditEventType
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    correlation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "event_type": self.event_type.value,
            "timestamp": self.timestamp,
            "details": self.details,
        }
        if self.correlation_id:
            result["correlation_id"] = self.correlation_id
        return result


class AuditLogger:
    """
    Structured audit logging for resilience events.

    Audit logs are written to a separate logger for easy filtering.
    """

    def __init__(self):
        self._logger = logging.getLogger(f"{__name__}.audit")

    def log(self, event: AuditEvent) -> None:
        """Log an audit event."""
        self._logger.info(f"AUDIT: {event.event_type.value}", extra={"audit": event.to_dict()})

    def connectivity_change(self, was_online: bool, is_online: bool, quality: str) -> None:
        """Log an online/offline transition."""
        self.log(
            AuditEvent(
                event_type=AuditEventType.CONNECTIVITY_CHANGE,
                details={
                    "was_online": was_online,
                    "is_online": is_online,
                    "quality": quality,
                },
            )
        )


# Global audit logger
_audit = AuditLogger()


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger."""
    return _audit


def audit_log(event_type: str, **details: Any) -> None:
    """
    Convenience function for audit logging.

    Args:
        event_type: Type of event (retry_attempt, attempt_timeout,
                    operation_deferred, queue_replayed, ...)
        **details: Additional details to include in the audit log
    """
    try:
        event_enum = AuditEventType(event_type)
    except ValueError:
        event_enum = AuditEventType.OTHER
        details["original_event_type"] = event_type

    _audit.log(AuditEvent(event_type=event_enum, details=details))
