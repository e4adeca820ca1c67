"""Tests for ResilienceContext wiring and lifecycle."""

import asyncio

import pytest

from eventsync.config import QueueConfig, ResilienceConfig
from eventsync.core.connection import ManualSignalSource, NetworkSignals
from eventsync.core.context import ResilienceContext, build_storage
from eventsync.core.offline_queue import QueuedOperation
from eventsync.core.resilience.runner import RunOptions, RunOutcome
from eventsync.core.storage import FileKeyValueStorage, MemoryKeyValueStorage


def _config(**queue):
    config = ResilienceConfig()
    config.queue = QueueConfig(backend="memory", **queue)
    return config


class TestBuildStorage:
    def test_memory_backend(self):
        assert isinstance(build_storage(QueueConfig(backend="memory")), MemoryKeyValueStorage)

    def test_file_backend(self, tmp_path):
        storage = build_storage(QueueConfig(backend="file", storage_dir=tmp_path / "q"))
        assert isinstance(storage, FileKeyValueStorage)
        assert storage.durable

    def test_unusable_directory_falls_back(self, tmp_path):
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        storage = build_storage(QueueConfig(backend="file", storage_dir=blocker / "queue"))
        assert isinstance(storage, MemoryKeyValueStorage)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_defaults_assume_online(self, recording_sleep):
        async with ResilienceContext.from_config(_config(), sleep_func=recording_sleep) as ctx:
            assert ctx.monitor.is_online
            assert ctx.monitor.started
            result = await ctx.run(lambda: _value(5))
            assert result.ok and result.value == 5

        assert not ctx.monitor.started

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        ctx = ResilienceContext.from_config(_config())
        await ctx.start()
        await ctx.close()
        await ctx.close()

    @pytest.mark.asyncio
    async def test_reconnect_drains_queue(self, recording_sleep):
        source = ManualSignalSource(NetworkSignals(is_online=False))
        ctx = ResilienceContext.from_config(_config(), signal_source=source, sleep_func=recording_sleep)
        saved = []

        async def save(payload):
            saved.append(payload)

        async with ctx:
            ctx.register_handler("submission.save", save)
            result = await ctx.run(
                lambda: _value("never"),
                RunOptions(defer_when_offline=True, queue_kind="submission.save", queue_payload={"title": "demo"}),
            )
            assert result.outcome == RunOutcome.DEFERRED
            assert saved == []

            source.set_online(True)
            await ctx.monitor.wait_for_listeners()

            assert saved == [{"title": "demo"}]
            assert len(ctx.queue) == 0

    @pytest.mark.asyncio
    async def test_reconnect_pushed_from_worker_thread_drains_queue(self, recording_sleep):
        source = ManualSignalSource(NetworkSignals(is_online=False))
        ctx = ResilienceContext.from_config(_config(), signal_source=source, sleep_func=recording_sleep)
        drained = asyncio.Event()

        async def save(payload):
            drained.set()

        async with ctx:
            ctx.register_handler("submission.save", save)
            await ctx.queue.enqueue(QueuedOperation(kind="submission.save", payload={"title": "demo"}))

            await asyncio.to_thread(source.set_online, True)
            await asyncio.wait_for(drained.wait(), timeout=1)
            await ctx.monitor.wait_for_listeners()

            assert len(ctx.queue) == 0

    @pytest.mark.asyncio
    async def test_start_drains_pending_when_online(self, memory_storage, queue):
        await queue.enqueue(QueuedOperation(kind="team.join", payload={"team": 1}))
        ctx = ResilienceContext.from_config(_config(), storage=memory_storage)
        joined = []

        async def join(payload):
            joined.append(payload)

        ctx.register_handler("team.join", join)
        async with ctx:
            assert joined == [{"team": 1}]
            assert len(ctx.queue) == 0

    @pytest.mark.asyncio
    async def test_drain_on_start_disabled(self, memory_storage, queue):
        await queue.enqueue(QueuedOperation(kind="team.join"))
        ctx = ResilienceContext.from_config(_config(drain_on_start=False), storage=memory_storage)

        async with ctx:
            assert len(ctx.queue) == 1

    @pytest.mark.asyncio
    async def test_sync_now_keeps_failed_entries(self, recording_sleep):
        ctx = ResilienceContext.from_config(_config(), sleep_func=recording_sleep)
        ctx.register_handler("k", _reject)

        async with ctx:
            await ctx.queue.enqueue(QueuedOperation(id="op-1", kind="k"))
            report = await ctx.sync_now()

        assert not report.ok
        assert "op-1" in report.failed
        assert ctx.queue.get("op-1").attempts == 1
        assert len(ctx.error_log) == 1

    @pytest.mark.asyncio
    async def test_cache_skips_revalidation_while_offline(self):
        source = ManualSignalSource(NetworkSignals(is_online=False))
        ctx = ResilienceContext.from_config(_config(), signal_source=source)
        async with ctx:
            assert ctx.cache._is_online() is False
            source.set_online(True)
            assert ctx.cache._is_online() is True

    @pytest.mark.asyncio
    async def test_facade_get_or_fetch_and_classify(self):
        async with ResilienceContext.from_config(_config()) as ctx:
            assert await ctx.get_or_fetch("events", lambda: _value(["hackathon"])) == ["hackathon"]
            assert await ctx.get_or_fetch("events", lambda: _value(["other"])) == ["hackathon"]
            assert ctx.classify(TimeoutError()).retryable


async def _value(value):
    return value


async def _reject(payload):
    raise PermissionError("row-level security")
