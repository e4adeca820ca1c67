"""Configuration package for eventsync.

Sub-modules:
    parsing   – Boolean/list/int parsing helpers
    domains   – RetryDefaults, CacheConfig, QueueConfig, MonitorConfig
    settings  – ResilienceConfig with layered TOML + environment loading
"""

from eventsync.config.domains import (  # noqa: F401
    CacheConfig,
    MonitorConfig,
    QueueConfig,
    RetryDefaults,
)
from eventsync.config.parsing import _parse_bool, _parse_list  # noqa: F401
from eventsync.config.settings import ResilienceConfig  # noqa: F401

__all__ = [
    "CacheConfig",
    "MonitorConfig",
    "QueueConfig",
    "ResilienceConfig",
    "RetryDefaults",
]
