"""Connection state models and quality derivation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

# Declared bandwidth classes that indicate a constrained link
CONSTRAINED_BANDWIDTH_CLASSES = frozenset({"slow-2g", "2g"})

# Round-trip time above which a link is considered slow
DEFAULT_SLOW_RTT_THRESHOLD_MS = 300


class ConnectionQuality(str, Enum):
    """Coarse connection-quality verdict."""

    FAST = "fast"
    SLOW = "slow"
    OFFLINE = "offline"


@dataclass(frozen=True)
class NetworkSignals:
    """Raw network signals reported by a signal source.

    Fields left as None were not reported and keep their previous value.
    """

    is_online: Optional[bool] = None
    round_trip_ms: Optional[float] = None
    bandwidth_class: Optional[str] = None
    save_data: Optional[bool] = None
    connection_type: Optional[str] = None


@dataclass(frozen=True)
class ConnectionState:
    """Immutable snapshot of connectivity. Replaced wholesale on every sample."""

    is_online: bool
    quality: ConnectionQuality
    round_trip_ms: float = 0.0
    declared_bandwidth_class: str = "unknown"
    save_data_requested: bool = False
    sampled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def optimistic(cls) -> "ConnectionState":
        """State reported when no network-signal source is available."""
        return cls(is_online=True, quality=ConnectionQuality.FAST)

    @property
    def is_offline(self) -> bool:
        return not self.is_online

    def merge(
        self,
        signals: NetworkSignals,
        slow_rtt_threshold_ms: float = DEFAULT_SLOW_RTT_THRESHOLD_MS,
    ) -> "ConnectionState":
        """Build the next state from this one and a (possibly partial) signal update."""
        is_online = self.is_online if signals.is_online is None else signals.is_online
        rtt = self.round_trip_ms if signals.round_trip_ms is None else signals.round_trip_ms
        bandwidth = (
            self.declared_bandwidth_class if signals.bandwidth_class is None else signals.bandwidth_class
        )
        save_data = self.save_data_requested if signals.save_data is None else signals.save_data
        return ConnectionState(
            is_online=is_online,
            quality=derive_quality(is_online, rtt, bandwidth, save_data, slow_rtt_threshold_ms),
            round_trip_ms=rtt,
            declared_bandwidth_class=bandwidth,
            save_data_requested=save_data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "quality": self.quality.value,
            "round_trip_ms": self.round_trip_ms,
            "declared_bandwidth_class": self.declared_bandwidth_class,
            "save_data_requested": self.save_data_requested,
            "sampled_at": self.sampled_at.isoformat(),
        }


def derive_quality(
    is_online: bool,
    round_trip_ms: float,
    bandwidth_class: str,
    save_data: bool,
    slow_rtt_threshold_ms: float = DEFAULT_SLOW_RTT_THRESHOLD_MS,
) -> ConnectionQuality:
    """Map raw signals to fast/slow/offline."""
    if not is_online:
        return ConnectionQuality.OFFLINE
    if round_trip_ms > slow_rtt_threshold_ms:
        return ConnectionQuality.SLOW
    if (bandwidth_class or "").lower() in CONSTRAINED_BANDWIDTH_CLASSES:
        return ConnectionQuality.SLOW
    if save_data:
        return ConnectionQuality.SLOW
    return ConnectionQuality.FAST
