"""Network-signal sources consumed by the ConnectionMonitor.

A source may push signal changes (``subscribe``) and/or answer an active
probe (``probe``). The monitor works with either or both.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, List, Optional, Protocol

import httpx

from eventsync.core.connection.models import NetworkSignals

logger = logging.getLogger(__name__)

SignalListener = Callable[[NetworkSignals], None]
Disposer = Callable[[], None]

DEFAULT_PROBE_TIMEOUT = 5.0


class NetworkSignalSource(Protocol):
    """Protocol for platform network-signal adapters."""

    def subscribe(self, listener: SignalListener) -> Disposer:
        """Register for pushed signal changes; return a disposer."""

    async def probe(self) -> Optional[NetworkSignals]:
        """Take an active sample, or return None if probing is unsupported."""


class ManualSignalSource:
    """Signal source driven by the host application.

    Used by embedding applications that receive online/offline events from
    their own platform, and by tests to simulate transitions. ``update`` may be
    called from any thread.

    Example:
        >>> source = ManualSignalSource()
        >>> monitor = ConnectionMonitor(source)
        >>> source.set_online(False)
    """

    def __init__(self, initial: Optional[NetworkSignals] = None) -> None:
        self._signals = initial or NetworkSignals(is_online=True)
        self._listeners: List[SignalListener] = []
        self._lock = threading.Lock()

    @property
    def signals(self) -> NetworkSignals:
        return self._signals

    def subscribe(self, listener: SignalListener) -> Disposer:
        with self._lock:
            self._listeners.append(listener)

        def dispose() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return dispose

    def update(self, signals: NetworkSignals) -> None:
        """Push a (possibly partial) signal update to every listener."""
        self._signals = NetworkSignals(
            is_online=self._signals.is_online if signals.is_online is None else signals.is_online,
            round_trip_ms=(
                self._signals.round_trip_ms if signals.round_trip_ms is None else signals.round_trip_ms
            ),
            bandwidth_class=(
                self._signals.bandwidth_class if signals.bandwidth_class is None else signals.bandwidth_class
            ),
            save_data=self._signals.save_data if signals.save_data is None else signals.save_data,
            connection_type=(
                self._signals.connection_type if signals.connection_type is None else signals.connection_type
            ),
        )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(signals)

    def set_online(self, is_online: bool) -> None:
        self.update(NetworkSignals(is_online=is_online))

    async def probe(self) -> Optional[NetworkSignals]:
        return self._signals

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)


class HttpProbeSignalSource:
    """Active probe: a HEAD request to a known endpoint.

    Any HTTP response counts as online, with the measured round-trip time.
    Transport errors and timeouts report offline.
    """

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._transport = transport

    def subscribe(self, listener: SignalListener) -> Disposer:
        # Probe-only source: nothing is ever pushed
        return lambda: None

    async def probe(self) -> Optional[NetworkSignals]:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                await client.head(self.url)
        except httpx.TransportError as exc:
            logger.debug("Connectivity probe to %s failed: %s", self.url, exc)
            return NetworkSignals(is_online=False)
        rtt_ms = (time.monotonic() - start) * 1000
        return NetworkSignals(is_online=True, round_trip_ms=round(rtt_ms, 1))
