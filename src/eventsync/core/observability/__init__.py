"""
Observability utilities for eventsync.

Provides audit logging and structured metrics for the resilience layer.

Example:
    from eventsync.core.observability import audit_log, get_metrics

    audit_log("retry_attempt", attempt=2, category="network")
    get_metrics().counter("queue.enqueued", labels={"kind": "team.update"})
"""

from eventsync.core.observability.audit import (
    AuditEvent,
    AuditEventType,
    AuditLogger,
    audit_log,
    get_audit_logger,
)
from eventsync.core.observability.metrics import (
    Metric,
    MetricsCollector,
    MetricType,
    get_metrics,
)

__all__ = [
    # Metrics
    "Metric",
    "MetricType",
    "MetricsCollector",
    "get_metrics",
    # Audit
    "AuditEvent",
    "AuditEventType",
    "AuditLogger",
    "audit_log",
    "get_audit_logger",
]
