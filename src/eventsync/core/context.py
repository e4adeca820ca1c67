"""Resilience context.

Owns one connection monitor, retry scheduler, offline queue, response cache,
error log and runner, with an explicit start/close lifecycle. Reconnection
drains the offline queue through the runner's registered replay handlers.

Example:
    async with ResilienceContext.from_config(config) as ctx:
        ctx.register_handler("submission.save", api.save_submission)
        result = await ctx.run(
            lambda: api.save_submission(draft),
            RunOptions(defer_when_offline=True, queue_kind="submission.save", queue_payload=draft),
        )
"""

from __future__ import annotations

import logging
import random
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, TypeVar

from eventsync.core.cache import ResponseCache
from eventsync.core.connection import (
    ConnectionMonitor,
    ConnectionState,
    HttpProbeSignalSource,
    NetworkSignalSource,
    Subscription,
)
from eventsync.core.errors.storage import StorageUnavailableError
from eventsync.core.offline_queue import DrainReport, OfflineQueue
from eventsync.core.resilience.error_log import ErrorLog
from eventsync.core.resilience.models import ClassifiedError, RetryPolicy, SleepFunc
from eventsync.core.resilience.retry import RetryScheduler
from eventsync.core.resilience.runner import (
    ReplayHandler,
    ResilientOperationRunner,
    RunOptions,
    RunResult,
)
from eventsync.core.storage import (
    DEFAULT_STORAGE_PATH,
    FileKeyValueStorage,
    KeyValueStorage,
    MemoryKeyValueStorage,
)

if TYPE_CHECKING:
    from eventsync.config import QueueConfig, ResilienceConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_storage(queue_config: "QueueConfig") -> KeyValueStorage:
    """Create the queue's storage backend, degrading to memory if the disk is unusable."""
    if queue_config.backend == "memory":
        return MemoryKeyValueStorage()
    path = queue_config.storage_dir or DEFAULT_STORAGE_PATH
    try:
        return FileKeyValueStorage(path, max_bytes=queue_config.max_bytes)
    except StorageUnavailableError as exc:
        logger.warning("Falling back to in-memory offline queue: %s", exc)
        return MemoryKeyValueStorage()


class ResilienceContext:
    """Explicitly constructed owner of the resilience components."""

    def __init__(
        self,
        *,
        monitor: ConnectionMonitor,
        queue: OfflineQueue,
        cache: ResponseCache,
        scheduler: RetryScheduler,
        error_log: ErrorLog,
        default_policy: Optional[RetryPolicy] = None,
        purge_after_seconds: Optional[int] = None,
        drain_on_start: bool = True,
    ) -> None:
        self.monitor = monitor
        self.queue = queue
        self.cache = cache
        self.scheduler = scheduler
        self.error_log = error_log
        self.runner = ResilientOperationRunner(
            monitor,
            scheduler,
            queue,
            cache=cache,
            error_log=error_log,
            default_policy=default_policy,
        )
        self.purge_after_seconds = purge_after_seconds
        self.drain_on_start = drain_on_start
        self._reconnect_subscription: Optional[Subscription] = None
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: Optional["ResilienceConfig"] = None,
        *,
        signal_source: Optional[NetworkSignalSource] = None,
        storage: Optional[KeyValueStorage] = None,
        sleep_func: Optional[SleepFunc] = None,
        rng: Optional[random.Random] = None,
    ) -> "ResilienceContext":
        """Build every component from configuration.

        Args:
            config: Settings (defaults when None)
            signal_source: Network-signal adapter; when None and a probe URL is
                configured, an HTTP probe is used, otherwise the monitor
                assumes it is always online
            storage: Queue storage; built from ``config.queue`` when None
            sleep_func: Injectable backoff sleep
            rng: Injectable jitter source
        """
        if config is None:
            from eventsync.config import ResilienceConfig

            config = ResilienceConfig()

        source = signal_source
        if source is None and config.monitor.probe_url:
            source = HttpProbeSignalSource(config.monitor.probe_url, timeout=config.monitor.probe_timeout)
        monitor = ConnectionMonitor(
            source,
            probe_interval=config.monitor.probe_interval if source is not None else None,
            slow_rtt_threshold_ms=config.monitor.slow_rtt_threshold_ms,
        )

        queue = OfflineQueue(storage if storage is not None else build_storage(config.queue))
        cache = ResponseCache(
            default_ttl_ms=config.cache.default_ttl_ms,
            max_entries=config.cache.max_entries,
            max_age_ms=config.cache.max_age_ms,
            sweep_interval=config.cache.sweep_interval,
            exclude_prefixes=config.cache.exclude_prefixes,
            is_online=lambda: monitor.is_online,
        )
        return cls(
            monitor=monitor,
            queue=queue,
            cache=cache,
            scheduler=RetryScheduler(sleep_func=sleep_func, rng=rng),
            error_log=ErrorLog(config.error_log_size),
            default_policy=config.retry.to_policy(),
            purge_after_seconds=config.queue.max_age_seconds,
            drain_on_start=config.queue.drain_on_start,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Open the queue, start the cache sweep and the monitor, and wire reconnect drains."""
        if self._started:
            return
        await self.queue.open()
        if self.purge_after_seconds:
            await self.queue.purge_older_than(self.purge_after_seconds)
        await self.cache.start()
        await self.monitor.start()
        self._reconnect_subscription = self.monitor.on_reconnect(self._on_reconnect)
        self._started = True
        logger.debug(
            "Resilience context started (online=%s, pending=%d, durable=%s)",
            self.monitor.is_online,
            len(self.queue),
            self.queue.durable,
        )

        if self.drain_on_start and self.monitor.is_online and len(self.queue):
            await self.sync_now()

    async def close(self) -> None:
        """Tear down in reverse order. Safe to call more than once."""
        if self._reconnect_subscription is not None:
            self._reconnect_subscription()
            self._reconnect_subscription = None
        await self.monitor.stop()
        await self.cache.stop()
        self._started = False

    async def __aenter__(self) -> "ResilienceContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _on_reconnect(self, state: ConnectionState) -> Awaitable[DrainReport]:
        logger.info("Back online (%s); replaying %d queued operation(s)", state.quality.value, len(self.queue))
        return self.sync_now()

    # =========================================================================
    # Facade
    # =========================================================================

    async def sync_now(self) -> DrainReport:
        """Drain the offline queue now through the registered replay handlers."""
        return await self.queue.drain(self.runner.replay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        options: Optional[RunOptions] = None,
    ) -> RunResult[T]:
        return await self.runner.run(operation, options)

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_ms: Optional[int] = None,
    ) -> T:
        return await self.cache.get_or_fetch(key, fetch_fn, ttl_ms)

    def register_handler(self, kind: str, handler: ReplayHandler) -> ReplayHandler:
        return self.runner.register_handler(kind, handler)

    def classify(self, error: Any) -> ClassifiedError:
        return self.scheduler.classifier.classify(error)
