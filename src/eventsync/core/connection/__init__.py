"""Connectivity monitoring.

Usage:
    from eventsync.core.connection import ConnectionMonitor, ManualSignalSource

    monitor = ConnectionMonitor(ManualSignalSource(), probe_interval=30)
    await monitor.start()
"""

from eventsync.core.connection.models import (
    CONSTRAINED_BANDWIDTH_CLASSES,
    DEFAULT_SLOW_RTT_THRESHOLD_MS,
    ConnectionQuality,
    ConnectionState,
    NetworkSignals,
    derive_quality,
)
from eventsync.core.connection.monitor import ConnectionMonitor, StateListener, Subscription
from eventsync.core.connection.signals import (
    HttpProbeSignalSource,
    ManualSignalSource,
    NetworkSignalSource,
)

__all__ = [
    "CONSTRAINED_BANDWIDTH_CLASSES",
    "DEFAULT_SLOW_RTT_THRESHOLD_MS",
    "ConnectionMonitor",
    "ConnectionQuality",
    "ConnectionState",
    "HttpProbeSignalSource",
    "ManualSignalSource",
    "NetworkSignalSource",
    "NetworkSignals",
    "StateListener",
    "Subscription",
    "derive_quality",
]
