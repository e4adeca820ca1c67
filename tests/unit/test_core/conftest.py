"""Shared fixtures for core unit tests."""

import asyncio
from typing import List

import pytest

from eventsync.core.connection import ManualSignalSource, NetworkSignals
from eventsync.core.offline_queue import OfflineQueue
from eventsync.core.storage import MemoryKeyValueStorage


class RecordingSleep:
    """Async sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)

    @property
    def calls_ms(self) -> List[float]:
        return [round(s * 1000, 3) for s in self.calls]


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def manual_source():
    """Signal source reporting online with a fast link."""
    return ManualSignalSource(NetworkSignals(is_online=True, round_trip_ms=50, bandwidth_class="4g"))


@pytest.fixture
def offline_source():
    return ManualSignalSource(NetworkSignals(is_online=False))


@pytest.fixture
def memory_storage():
    return MemoryKeyValueStorage()


@pytest.fixture
def queue(memory_storage):
    return OfflineQueue(memory_storage)
