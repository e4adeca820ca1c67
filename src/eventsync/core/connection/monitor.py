"""Connection monitor.

Samples network signals from a ``NetworkSignalSource`` (pushed changes plus
an optional periodic probe), derives a ``ConnectionState`` and notifies
listeners. Every registration returns a ``Subscription`` disposer.

With no signal source the monitor reports online/fast permanently. Sources may
push from any thread; pushes are applied on the loop that called ``start()``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Set

from eventsync.core.connection.models import (
    DEFAULT_SLOW_RTT_THRESHOLD_MS,
    ConnectionQuality,
    ConnectionState,
    NetworkSignals,
)
from eventsync.core.connection.signals import Disposer, NetworkSignalSource
from eventsync.core.observability import get_audit_logger

logger = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], Any]


class Subscription:
    """Idempotent disposer for a listener registration.

    Call it (or leave its ``with`` block) to unregister.
    """

    def __init__(self, dispose: Disposer) -> None:
        self._dispose: Optional[Disposer] = dispose

    @property
    def active(self) -> bool:
        return self._dispose is not None

    def __call__(self) -> None:
        dispose, self._dispose = self._dispose, None
        if dispose is not None:
            dispose()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self()


def _signature(state: ConnectionState) -> tuple:
    return (
        state.is_online,
        state.quality,
        state.round_trip_ms,
        state.declared_bandwidth_class,
        state.save_data_requested,
    )


class ConnectionMonitor:
    """Tracks connectivity and notifies listeners of changes.

    Args:
        source: Platform signal adapter; None means "always online"
        probe_interval: Seconds between active probes after ``start()``;
            None or 0 disables periodic probing
        slow_rtt_threshold_ms: Round-trip time above which the link is slow

    Example:
        >>> async with ConnectionMonitor(ManualSignalSource()) as monitor:
        ...     with monitor.on_reconnect(lambda state: print("back online")):
        ...         ...
    """

    def __init__(
        self,
        source: Optional[NetworkSignalSource] = None,
        *,
        probe_interval: Optional[float] = None,
        slow_rtt_threshold_ms: float = DEFAULT_SLOW_RTT_THRESHOLD_MS,
    ) -> None:
        self.source = source
        self.probe_interval = probe_interval
        self.slow_rtt_threshold_ms = slow_rtt_threshold_ms
        self._state = ConnectionState.optimistic()
        self._listeners: List[StateListener] = []
        self._reconnect_listeners: List[StateListener] = []
        self._listener_tasks: Set["asyncio.Task[Any]"] = set()
        self._source_disposer: Optional[Disposer] = None
        self._probe_task: Optional["asyncio.Task[None]"] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False

    # =========================================================================
    # State
    # =========================================================================

    def current(self) -> ConnectionState:
        """Last known state. Never blocks."""
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state.is_online

    @property
    def quality(self) -> ConnectionQuality:
        return self._state.quality

    @property
    def started(self) -> bool:
        return self._started

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, callback: Optional[StateListener] = None) -> Optional[Subscription]:
        """Begin sampling. Returns the callback's Subscription if one was given."""
        subscription = self.subscribe(callback) if callback is not None else None
        if self._started:
            return subscription
        self._started = True
        self._loop = asyncio.get_running_loop()

        if self.source is None:
            logger.info("No network-signal source; assuming online")
            return subscription

        self._source_disposer = self.source.subscribe(self._on_signals)
        await self.refresh()
        if self.probe_interval:
            self._stop_event = asyncio.Event()
            self._probe_task = asyncio.create_task(self._probe_loop(self._stop_event))
        return subscription

    async def stop(self) -> None:
        """Unregister all listeners and release the source, probe task and listener tasks."""
        if self._source_disposer is not None:
            self._source_disposer()
            self._source_disposer = None

        if self._stop_event is not None:
            self._stop_event.set()
        if self._probe_task is not None:
            try:
                await self._probe_task
            finally:
                self._probe_task = None
                self._stop_event = None

        pending = [task for task in self._listener_tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._listener_tasks.clear()

        self._listeners.clear()
        self._reconnect_listeners.clear()
        self._loop = None
        self._started = False

    async def __aenter__(self) -> "ConnectionMonitor":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, callback: StateListener) -> Subscription:
        """Call ``callback`` with every new ConnectionState."""
        return self._register(self._listeners, callback)

    def on_reconnect(self, callback: StateListener) -> Subscription:
        """Call ``callback`` on every offline -> online transition."""
        return self._register(self._reconnect_listeners, callback)

    def _register(self, registry: List[StateListener], callback: StateListener) -> Subscription:
        registry.append(callback)

        def dispose() -> None:
            if callback in registry:
                registry.remove(callback)

        return Subscription(dispose)

    # =========================================================================
    # Sampling
    # =========================================================================

    async def refresh(self) -> ConnectionState:
        """Take one active sample now. A failing probe keeps the previous state."""
        if self.source is None:
            return self._state
        try:
            signals = await self.source.probe()
        except Exception as exc:  # noqa: BLE001 - a broken probe must not take the monitor down
            logger.warning("Connectivity probe failed; keeping previous state: %s", exc)
            return self._state
        if signals is not None:
            self._apply(signals)
        return self._state

    async def _probe_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.probe_interval)
            except asyncio.TimeoutError:
                await self.refresh()

    def _on_signals(self, signals: NetworkSignals) -> None:
        """Apply pushed signals on the monitor's event loop, whichever thread pushed them."""
        loop = self._loop
        if loop is None or loop.is_closed():
            self._apply(signals)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._apply(signals)
        else:
            loop.call_soon_threadsafe(self._apply, signals)

    def _apply(self, signals: NetworkSignals) -> None:
        previous = self._state
        state = previous.merge(signals, self.slow_rtt_threshold_ms)
        self._state = state

        if previous.is_online != state.is_online:
            logger.info(
                "Connectivity changed: %s -> %s",
                previous.quality.value,
                state.quality.value,
            )
            get_audit_logger().connectivity_change(previous.is_online, state.is_online, state.quality.value)

        if _signature(previous) != _signature(state):
            for listener in list(self._listeners):
                self._dispatch(listener, state)
        if not previous.is_online and state.is_online:
            for listener in list(self._reconnect_listeners):
                self._dispatch(listener, state)

    def _dispatch(self, listener: StateListener, state: ConnectionState) -> None:
        try:
            result = listener(state)
        except Exception:  # noqa: BLE001 - listeners are isolated from each other
            logger.exception("Connection listener %r raised", listener)
            return
        if not inspect.isawaitable(result):
            return
        try:
            task = asyncio.ensure_future(result)
        except RuntimeError:
            logger.warning("No running event loop; dropping async connection listener %r", listener)
            if inspect.iscoroutine(result):
                result.close()
            return
        self._listener_tasks.add(task)
        task.add_done_callback(self._listener_done)

    def _listener_done(self, task: "asyncio.Task[Any]") -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async connection listener failed: %s", exc, exc_info=exc)

    async def wait_for_listeners(self) -> None:
        """Wait until async listener tasks scheduled so far have finished."""
        while self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)
