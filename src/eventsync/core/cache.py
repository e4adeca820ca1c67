"""Time-boxed response cache with request deduplication.

Read-through semantics for ``get_or_fetch``:

- fresh hit: cached value, no fetch
- stale hit: cached value now, plus one background revalidation
- miss: await a fetch shared by every concurrent caller for the key

A fetch only writes its result if it is still the current in-flight request
for its key when it completes. ``set``, ``invalidate`` and ``clear`` detach
the in-flight request, so a slow fetch can never overwrite a newer write.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Sequence, TypeVar

from eventsync.core.observability import audit_log, get_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_MS = 5 * 60 * 1000
DEFAULT_MAX_AGE_MS = 60 * 60 * 1000
DEFAULT_MAX_ENTRIES = 500
DEFAULT_SWEEP_INTERVAL = 60.0


class _Miss:
    """Sentinel type returned by ``ResponseCache.get`` on a miss."""

    _instance: Optional["_Miss"] = None

    def __new__(cls) -> "_Miss":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class CacheEntry(Generic[T]):
    """A cached value. Timestamps are in milliseconds of the cache clock."""

    key: str
    value: T
    written_at: float
    ttl_ms: int

    def age_ms(self, now: float) -> float:
        return now - self.written_at

    def is_fresh(self, now: float) -> bool:
        return self.age_ms(now) < self.ttl_ms


@dataclass
class InFlightRequest(Generic[T]):
    """An outstanding fetch for one key."""

    key: str
    generation: int
    task: Optional["asyncio.Task[T]"] = None
    subscriber_count: int = 0
    revalidation: bool = False


@dataclass
class CacheStats:
    """Counters since the cache was created (or since ``reset_stats``)."""

    hits: int = 0
    stale_hits: int = 0
    misses: int = 0
    evictions: int = 0
    fetches: int = 0
    fetch_failures: int = 0
    revalidations: int = 0
    revalidation_failures: int = 0
    entries: int = 0
    in_flight: int = 0

    def to_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class ResponseCache:
    """Key -> value cache with TTL freshness, max age and entry budget.

    Args:
        default_ttl_ms: Freshness window used when a call gives no ``ttl_ms``
        max_entries: Entry budget enforced by ``sweep()``
        max_age_ms: Entries at least this old are never served
        sweep_interval: Seconds between background sweeps after ``start()``
        clock: Monotonic clock in seconds (injectable for tests)
        exclude_prefixes: Keys with these prefixes are never stored
        is_online: Optional callable; background revalidation is skipped
            while it returns False

    Example:
        >>> cache = ResponseCache(default_ttl_ms=30_000)
        >>> teams = await cache.get_or_fetch("teams:42", lambda: api.list_teams(42))
    """

    def __init__(
        self,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        exclude_prefixes: Sequence[str] = (),
        is_online: Optional[Callable[[], bool]] = None,
    ) -> None:
        if default_ttl_ms < 0:
            raise ValueError(f"default_ttl_ms must be >= 0, got {default_ttl_ms}")
        if max_entries < 1:
            raise ValueError(f"max_entries must be >= 1, got {max_entries}")
        if max_age_ms < default_ttl_ms:
            raise ValueError("max_age_ms must be >= default_ttl_ms")
        self.default_ttl_ms = default_ttl_ms
        self.max_entries = max_entries
        self.max_age_ms = max_age_ms
        self.sweep_interval = sweep_interval
        self.exclude_prefixes = tuple(exclude_prefixes)
        self._clock = clock
        self._is_online = is_online
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._in_flight: Dict[str, InFlightRequest[Any]] = {}
        self._generations = itertools.count(1)
        self._stats = CacheStats()
        self._sweep_task: Optional[asyncio.Task[None]] = None
        self._stop_event: Optional[asyncio.Event] = None

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _excluded(self, key: str) -> bool:
        return any(key.startswith(prefix) for prefix in self.exclude_prefixes)

    @staticmethod
    def _check_ttl(ttl_ms: Optional[int]) -> None:
        if ttl_ms is not None and ttl_ms < 0:
            raise ValueError(f"ttl_ms must be >= 0, got {ttl_ms}")

    # =========================================================================
    # Reads
    # =========================================================================

    def _lookup(self, key: str) -> Optional[CacheEntry[Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.age_ms(self._now_ms()) >= self.max_age_ms:
            del self._entries[key]
            self._stats.evictions += 1
            return None
        return entry

    def get(self, key: str) -> Any:
        """Return the fresh or stale value for ``key``, or ``MISS``."""
        entry = self._lookup(key)
        if entry is None:
            return MISS
        return entry.value

    def peek(self, key: str) -> Optional[CacheEntry[Any]]:
        """Return the entry for ``key`` without counting a hit or miss."""
        return self._lookup(key)

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_ms: Optional[int] = None,
    ) -> T:
        """Read-through entry point.

        Raises:
            ValueError: ``ttl_ms`` is negative (checked before any fetch).
            Whatever ``fetch_fn`` raised, on a miss. Every caller sharing the
            fetch sees the same exception.
        """
        self._check_ttl(ttl_ms)
        if self._excluded(key):
            return await fetch_fn()

        entry = self._lookup(key)
        if entry is not None:
            if entry.is_fresh(self._now_ms()):
                self._stats.hits += 1
                return entry.value
            self._stats.stale_hits += 1
            self._revalidate(key, fetch_fn, ttl_ms)
            return entry.value

        self._stats.misses += 1
        request = self._start_fetch(key, fetch_fn, ttl_ms)
        request.subscriber_count += 1
        try:
            # Shielded so one cancelled caller does not cancel the shared fetch
            return await asyncio.shield(request.task)
        finally:
            request.subscriber_count -= 1

    # =========================================================================
    # Fetching
    # =========================================================================

    def _start_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_ms: Optional[int],
        revalidation: bool = False,
    ) -> InFlightRequest[T]:
        request = self._in_flight.get(key)
        if request is not None:
            return request

        request = InFlightRequest(key=key, generation=next(self._generations), revalidation=revalidation)
        request.task = asyncio.ensure_future(self._fetch(request, fetch_fn, ttl_ms))
        request.task.add_done_callback(lambda task: self._settle(request, task))
        self._in_flight[key] = request
        self._stats.fetches += 1
        return request

    async def _fetch(
        self,
        request: InFlightRequest[T],
        fetch_fn: Callable[[], Awaitable[T]],
        ttl_ms: Optional[int],
    ) -> T:
        value = await fetch_fn()
        if self._in_flight.get(request.key) is request:
            self._store(request.key, value, ttl_ms)
        else:
            logger.debug(
                "Discarding fetch result for %s (generation %d): key was written or invalidated",
                request.key,
                request.generation,
            )
        return value

    def _settle(self, request: InFlightRequest[Any], task: "asyncio.Task[Any]") -> None:
        if self._in_flight.get(request.key) is request:
            del self._in_flight[request.key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if request.revalidation:
            self._stats.revalidation_failures += 1
            logger.warning("Background revalidation of %s failed; keeping stale value: %s", request.key, exc)
            audit_log(
                "cache_revalidation_failed",
                key=request.key,
                error_type=type(exc).__name__,
                error_message=str(exc)[:200],
            )
            get_metrics().counter("cache.revalidation_failed")
        else:
            self._stats.fetch_failures += 1
            logger.debug("Fetch for %s failed: %s", request.key, exc)

    def _revalidate(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl_ms: Optional[int],
    ) -> None:
        if key in self._in_flight:
            return
        if self._is_online is not None and not self._is_online():
            logger.debug("Offline; serving stale %s without revalidation", key)
            return
        self._stats.revalidations += 1
        self._start_fetch(key, fetch_fn, ttl_ms, revalidation=True)

    # =========================================================================
    # Writes
    # =========================================================================

    def _store(self, key: str, value: Any, ttl_ms: Optional[int]) -> None:
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        self._entries[key] = CacheEntry(key=key, value=value, written_at=self._now_ms(), ttl_ms=ttl)

    def _detach(self, key: str) -> None:
        request = self._in_flight.pop(key, None)
        if request is not None:
            logger.debug("Detached in-flight fetch for %s (generation %d)", key, request.generation)

    def set(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        """Write ``value``; any fetch already in flight for ``key`` will not overwrite it."""
        self._check_ttl(ttl_ms)
        if self._excluded(key):
            return
        self._detach(key)
        self._store(key, value, ttl_ms)

    def invalidate(self, key: str) -> bool:
        """Force the next read of ``key`` to fetch. Returns True if an entry was removed."""
        self._detach(key)
        return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Invalidate every key starting with ``prefix``. Returns entries removed."""
        for key in [k for k in self._in_flight if k.startswith(prefix)]:
            self._detach(key)
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        for key in list(self._in_flight):
            self._detach(key)
        self._entries.clear()

    # =========================================================================
    # Eviction
    # =========================================================================

    def sweep(self) -> int:
        """Evict entries past max age, then trim to the entry budget oldest-first.

        Returns:
            Number of entries evicted.
        """
        now = self._now_ms()
        expired = [k for k, e in self._entries.items() if e.age_ms(now) >= self.max_age_ms]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.max_entries
        trimmed: list[str] = []
        if overflow > 0:
            by_age = sorted(self._entries.values(), key=lambda e: e.written_at)
            trimmed = [e.key for e in by_age[:overflow]]
            for key in trimmed:
                del self._entries[key]

        evicted = len(expired) + len(trimmed)
        if evicted:
            self._stats.evictions += evicted
            logger.debug(
                "Cache sweep evicted %d entr%s (%d expired, %d over budget)",
                evicted,
                "y" if evicted == 1 else "ies",
                len(expired),
                len(trimmed),
            )
            get_metrics().counter("cache.evicted", value=evicted)
        return evicted

    async def _sweep_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                self.sweep()

    async def start(self) -> None:
        """Start the periodic sweep task. No-op if already running."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._stop_event = asyncio.Event()
        self._sweep_task = asyncio.create_task(self._sweep_loop(self._stop_event))

    async def stop(self) -> None:
        """Stop the sweep task and cancel outstanding background revalidations."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._sweep_task is not None:
            try:
                await self._sweep_task
            finally:
                self._sweep_task = None
                self._stop_event = None
        for request in list(self._in_flight.values()):
            if request.revalidation and request.task is not None and not request.task.done():
                request.task.cancel()

    async def __aenter__(self) -> "ResponseCache":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    # =========================================================================
    # Introspection
    # =========================================================================

    def stats(self) -> CacheStats:
        snapshot = CacheStats(**self._stats.to_dict())
        snapshot.entries = len(self._entries)
        snapshot.in_flight = len(self._in_flight)
        return snapshot

    def reset_stats(self) -> None:
        self._stats = CacheStats()

    def in_flight(self, key: str) -> Optional[InFlightRequest[Any]]:
        return self._in_flight.get(key)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self._lookup(key) is not None
