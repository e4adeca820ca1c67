"""Top-level resilience configuration and loading.

Priority (highest to lowest):
1. Environment variables (``EVENTSYNC_*``)
2. Project TOML config (./eventsync.toml)
3. User TOML config (~/.eventsync.toml)
4. XDG config (~/.config/eventsync/config.toml)
5. Default values

An explicit file (argument or ``EVENTSYNC_CONFIG_FILE``) replaces layers 2-4.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from eventsync.config.domains import CacheConfig, MonitorConfig, QueueConfig, RetryDefaults
from eventsync.config.parsing import _parse_bool, _parse_list, _parse_optional_int

logger = logging.getLogger(__name__)

_ENV_PREFIX = "EVENTSYNC_"


@dataclass
class ResilienceConfig:
    """Configuration for a ResilienceContext."""

    retry: RetryDefaults = field(default_factory=RetryDefaults)
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    error_log_size: int = 100
    log_level: str = "INFO"
    structured_logging: bool = False

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "ResilienceConfig":
        """Create configuration from environment variables and optional TOML files."""
        config = cls()

        toml_path = config_file or os.environ.get(f"{_ENV_PREFIX}CONFIG_FILE")
        if toml_path:
            config._load_toml(Path(toml_path))
        else:
            xdg_config_home = os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config")
            xdg_config = Path(xdg_config_home) / "eventsync" / "config.toml"
            if xdg_config.exists():
                config._load_toml(xdg_config)
                logger.debug("Loaded XDG config from %s", xdg_config)

            home_config = Path.home() / ".eventsync.toml"
            if home_config.exists():
                config._load_toml(home_config)
                logger.debug("Loaded user config from %s", home_config)

            project_config = Path("eventsync.toml")
            if project_config.exists():
                config._load_toml(project_config)
                logger.debug("Loaded project config from %s", project_config)

        config._load_env()
        return config

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "ResilienceConfig":
        config = cls()
        config._apply_toml(data)
        return config

    def _load_toml(self, path: Path) -> None:
        """Load configuration from a TOML file, layering over current values."""
        if not path.exists():
            logger.warning("Config file not found: %s", path)
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.error("Failed to load config from %s: %s", path, exc)
            return
        self._apply_toml(data)

    def _apply_toml(self, data: Dict[str, Any]) -> None:
        # Sections replace wholesale; keys missing from a section take defaults
        if "retry" in data:
            self.retry = RetryDefaults.from_toml_dict(data["retry"])
        if "cache" in data:
            self.cache = CacheConfig.from_toml_dict(data["cache"])
        if "queue" in data:
            self.queue = QueueConfig.from_toml_dict(data["queue"])
        if "monitor" in data:
            self.monitor = MonitorConfig.from_toml_dict(data["monitor"])
        if "error_log" in data and "max_records" in data["error_log"]:
            self.error_log_size = int(data["error_log"]["max_records"])
        if "logging" in data:
            log = data["logging"]
            if "level" in log:
                self.log_level = str(log["level"]).upper()
            if "structured" in log:
                self.structured_logging = _parse_bool(log["structured"])

    def _load_env(self) -> None:
        """Load configuration from environment variables."""
        env = os.environ

        # Retry defaults
        if value := env.get(f"{_ENV_PREFIX}RETRY_MAX_ATTEMPTS"):
            self.retry.max_attempts = int(value)
        if value := env.get(f"{_ENV_PREFIX}RETRY_BASE_DELAY_MS"):
            self.retry.base_delay_ms = int(value)
        if value := env.get(f"{_ENV_PREFIX}RETRY_BACKOFF_MULTIPLIER"):
            self.retry.backoff_multiplier = float(value)
        if value := env.get(f"{_ENV_PREFIX}RETRY_TIMEOUT_MS"):
            self.retry.timeout_ms = int(value)
        if value := env.get(f"{_ENV_PREFIX}RETRY_MAX_DELAY_MS"):
            self.retry.max_delay_ms = int(value)
        if value := env.get(f"{_ENV_PREFIX}RETRY_JITTER_MS"):
            self.retry.jitter_ms = int(value)

        # Response cache
        if value := env.get(f"{_ENV_PREFIX}CACHE_DEFAULT_TTL_MS"):
            self.cache.default_ttl_ms = int(value)
        if value := env.get(f"{_ENV_PREFIX}CACHE_MAX_ENTRIES"):
            self.cache.max_entries = int(value)
        if value := env.get(f"{_ENV_PREFIX}CACHE_MAX_AGE_MS"):
            self.cache.max_age_ms = int(value)
        if value := env.get(f"{_ENV_PREFIX}CACHE_SWEEP_INTERVAL"):
            self.cache.sweep_interval = float(value)
        if (value := env.get(f"{_ENV_PREFIX}CACHE_EXCLUDE_PREFIXES")) is not None:
            self.cache.exclude_prefixes = _parse_list(value)

        # Offline queue
        if value := env.get(f"{_ENV_PREFIX}QUEUE_BACKEND"):
            self.queue = QueueConfig(
                backend=value,
                storage_dir=self.queue.storage_dir,
                max_bytes=self.queue.max_bytes,
                max_age_seconds=self.queue.max_age_seconds,
                drain_on_start=self.queue.drain_on_start,
            )
        if value := env.get(f"{_ENV_PREFIX}QUEUE_STORAGE_DIR"):
            self.queue.storage_dir = Path(value).expanduser()
        if value := env.get(f"{_ENV_PREFIX}QUEUE_MAX_BYTES"):
            self.queue.max_bytes = _parse_optional_int(value)
        if value := env.get(f"{_ENV_PREFIX}QUEUE_MAX_AGE_SECONDS"):
            self.queue.max_age_seconds = _parse_optional_int(value)
        if value := env.get(f"{_ENV_PREFIX}QUEUE_DRAIN_ON_START"):
            self.queue.drain_on_start = _parse_bool(value)

        # Connection monitor
        if value := env.get(f"{_ENV_PREFIX}MONITOR_PROBE_URL"):
            self.monitor.probe_url = value
        if value := env.get(f"{_ENV_PREFIX}MONITOR_PROBE_INTERVAL"):
            self.monitor.probe_interval = float(value)
        if value := env.get(f"{_ENV_PREFIX}MONITOR_PROBE_TIMEOUT"):
            self.monitor.probe_timeout = float(value)
        if value := env.get(f"{_ENV_PREFIX}MONITOR_SLOW_RTT_MS"):
            self.monitor.slow_rtt_threshold_ms = float(value)

        # Error log
        if value := env.get(f"{_ENV_PREFIX}ERROR_LOG_SIZE"):
            self.error_log_size = int(value)

        # Logging
        if value := env.get(f"{_ENV_PREFIX}LOG_LEVEL"):
            self.log_level = value.upper()
        if value := env.get(f"{_ENV_PREFIX}STRUCTURED_LOGGING"):
            self.structured_logging = _parse_bool(value)

    def setup_logging(self) -> None:
        """Configure the ``eventsync`` logger based on settings."""
        level = getattr(logging, self.log_level, logging.INFO)

        if self.structured_logging:
            # JSON-style structured logging
            formatter = logging.Formatter(
                '{"timestamp":"%(asctime)s","level":"%(levelname)s","logger":"%(name)s","message":"%(message)s"}'
            )
        else:
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        handler = logging.StreamHandler()
        handler.setFormatter(formatter)

        root_logger = logging.getLogger("eventsync")
        root_logger.setLevel(level)
        for existing in list(root_logger.handlers):
            if getattr(existing, "_eventsync_handler", False):
                root_logger.removeHandler(existing)
        handler._eventsync_handler = True  # type: ignore[attr-defined]
        root_logger.addHandler(handler)
