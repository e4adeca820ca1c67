"""Section configuration dataclasses.

One small dataclass per ``[section]`` of the TOML config: retry defaults,
response cache, offline queue and connection monitor.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from eventsync.config.parsing import _parse_bool, _parse_list, _parse_optional_int
from eventsync.core.resilience.models import RetryPolicy

_VALID_QUEUE_BACKENDS = {"file", "memory"}


@dataclass
class RetryDefaults:
    """Default retry policy for operations that do not supply their own.

    Attributes:
        max_attempts: Total attempts including the first (1 disables retries)
        base_delay_ms: Delay after the first failure
        backoff_multiplier: Growth factor per failed attempt
        timeout_ms: Per-attempt timeout
        max_delay_ms: Cap on any single delay
        jitter_ms: Upper bound of random extra delay
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2.0
    timeout_ms: int = 10_000
    max_delay_ms: int = 30_000
    jitter_ms: int = 0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "RetryDefaults":
        """Create config from TOML dict (typically [retry] section)."""
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            base_delay_ms=int(data.get("base_delay_ms", 1000)),
            backoff_multiplier=float(data.get("backoff_multiplier", 2.0)),
            timeout_ms=int(data.get("timeout_ms", 10_000)),
            max_delay_ms=int(data.get("max_delay_ms", 30_000)),
            jitter_ms=int(data.get("jitter_ms", 0)),
        )

    def to_policy(self) -> RetryPolicy:
        """Build a validated RetryPolicy.

        Raises:
            ValueError: If any value is out of range
        """
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            timeout_ms=self.timeout_ms,
            max_delay_ms=self.max_delay_ms,
            jitter_ms=self.jitter_ms,
        )


@dataclass
class CacheConfig:
    """Configuration for the response cache.

    Attributes:
        default_ttl_ms: Freshness window for entries written without a TTL
        max_entries: Entry budget enforced by the periodic sweep
        max_age_ms: Entries at least this old are never served
        sweep_interval: Seconds between sweeps
        exclude_prefixes: Key prefixes that are never cached
    """

    default_ttl_ms: int = 5 * 60 * 1000
    max_entries: int = 500
    max_age_ms: int = 60 * 60 * 1000
    sweep_interval: float = 60.0
    exclude_prefixes: List[str] = field(default_factory=lambda: ["auth:", "session:"])

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "CacheConfig":
        """Create config from TOML dict (typically [cache] section)."""
        config = cls(
            default_ttl_ms=int(data.get("default_ttl_ms", 5 * 60 * 1000)),
            max_entries=int(data.get("max_entries", 500)),
            max_age_ms=int(data.get("max_age_ms", 60 * 60 * 1000)),
            sweep_interval=float(data.get("sweep_interval", 60.0)),
        )
        if "exclude_prefixes" in data:
            config.exclude_prefixes = _parse_list(data["exclude_prefixes"])
        return config


@dataclass
class QueueConfig:
    """Configuration for the offline queue.

    Attributes:
        backend: "file" for durable storage, "memory" for process-local
        storage_dir: Directory for the file backend (None uses the default)
        max_bytes: Optional quota for the file backend
        max_age_seconds: Entries older than this are purged on start (None keeps forever)
        drain_on_start: Drain once at startup if online and entries are pending
    """

    backend: str = "file"
    storage_dir: Optional[Path] = None
    max_bytes: Optional[int] = None
    max_age_seconds: Optional[int] = None
    drain_on_start: bool = True

    def __post_init__(self) -> None:
        self.backend = self.backend.strip().lower()
        if self.backend not in _VALID_QUEUE_BACKENDS:
            raise ValueError(
                f"Invalid queue backend '{self.backend}'. Valid options: {', '.join(sorted(_VALID_QUEUE_BACKENDS))}"
            )

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "QueueConfig":
        """Create config from TOML dict (typically [queue] section)."""
        storage_dir = data.get("storage_dir")
        return cls(
            backend=str(data.get("backend", "file")),
            storage_dir=Path(storage_dir).expanduser() if storage_dir else None,
            max_bytes=_parse_optional_int(data.get("max_bytes")),
            max_age_seconds=_parse_optional_int(data.get("max_age_seconds")),
            drain_on_start=_parse_bool(data.get("drain_on_start", True)),
        )


@dataclass
class MonitorConfig:
    """Configuration for the connection monitor.

    Attributes:
        probe_url: URL probed with HEAD requests (None disables active probing)
        probe_interval: Seconds between probes
        probe_timeout: Timeout for one probe request (seconds)
        slow_rtt_threshold_ms: Round-trip time above which the link is slow
    """

    probe_url: Optional[str] = None
    probe_interval: float = 30.0
    probe_timeout: float = 5.0
    slow_rtt_threshold_ms: float = 300.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "MonitorConfig":
        """Create config from TOML dict (typically [monitor] section)."""
        return cls(
            probe_url=data.get("probe_url") or None,
            probe_interval=float(data.get("probe_interval", 30.0)),
            probe_timeout=float(data.get("probe_timeout", 5.0)),
            slow_rtt_threshold_ms=float(data.get("slow_rtt_threshold_ms", 300.0)),
        )
