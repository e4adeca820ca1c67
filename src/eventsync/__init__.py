"""eventsync: network resilience and response caching for the event app client.

Usage:
    from eventsync import ResilienceConfig, ResilienceContext, RunOptions

    async with ResilienceContext.from_config(ResilienceConfig.from_env()) as ctx:
        result = await ctx.run(fetch_teams)
"""

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as get_package_version

from eventsync.config import ResilienceConfig
from eventsync.core import *  # noqa: F401,F403
from eventsync.core import __all__ as _core_all
from eventsync.core.errors import (
    AttemptTimeoutError,
    OperationFailedError,
    QueuePersistenceError,
    ResilienceError,
    RetryExhaustedError,
    StorageError,
)


def _get_version() -> str:
    """Get package version from metadata (single source of truth: pyproject.toml)."""
    try:
        return get_package_version("eventsync")
    except PackageNotFoundError:
        return "0.1.0"  # Fallback for dev without install


__version__ = _get_version()

__all__ = [
    *_core_all,
    "AttemptTimeoutError",
    "OperationFailedError",
    "QueuePersistenceError",
    "ResilienceConfig",
    "ResilienceError",
    "RetryExhaustedError",
    "StorageError",
    "__version__",
]
