"""Tests for OfflineQueue.

Verifies:
- enqueue is idempotent per id (latest write wins, original position kept)
- persistence failures raise QueuePersistenceError instead of dropping
- drain replays per-kind partitions in order and stops a partition on failure
- only one drain runs at a time
- entries replaced during replay are not lost
- the queue survives a restart with file storage
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from eventsync.core.errors import QueuePersistenceError, StorageError, StorageUnavailableError
from eventsync.core.offline_queue import OfflineQueue, QueuedOperation
from eventsync.core.storage import FileKeyValueStorage, MemoryKeyValueStorage


class _Recorder:
    """Replay function that records calls and can be told to fail."""

    def __init__(self, fail_ids=()):
        self.calls = []
        self.fail_ids = set(fail_ids)

    async def __call__(self, op):
        self.calls.append((op.kind, op.id, op.payload))
        await asyncio.sleep(0)
        if op.id in self.fail_ids:
            raise ConnectionResetError(f"replay of {op.id} failed")


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_assigns_sequence(self, queue):
        a = await queue.enqueue(QueuedOperation(id="a", kind="team.update", payload={"n": 1}))
        b = await queue.enqueue(QueuedOperation(id="b", kind="team.update", payload={"n": 2}))

        assert (a.sequence, b.sequence) == (0, 1)
        assert [op.id for op in queue.pending()] == ["a", "b"]
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_generated_id(self, queue):
        op = await queue.enqueue(QueuedOperation(kind="submission.save"))
        assert len(op.id) == 26
        assert queue.get(op.id) == op

    @pytest.mark.asyncio
    async def test_same_id_latest_write_wins(self, queue, memory_storage):
        await queue.enqueue(QueuedOperation(id="a", kind="form.autosave", payload={"title": "v1"}))
        await queue.enqueue(QueuedOperation(id="b", kind="form.autosave", payload={"title": "other"}))
        replaced = await queue.enqueue(QueuedOperation(id="a", kind="form.autosave", payload={"title": "v2"}))

        assert len(queue) == 2
        assert replaced.revision == 1
        assert replaced.sequence == 0
        assert [op.id for op in queue.pending()] == ["a", "b"]
        assert queue.get("a").payload == {"title": "v2"}
        assert memory_storage.list_keys("queue:") == ["queue:a", "queue:b"]

    @pytest.mark.asyncio
    async def test_persistence_failure_is_loud(self):
        queue = OfflineQueue(MemoryKeyValueStorage(max_entries=1))
        await queue.enqueue(QueuedOperation(id="a", kind="k"))

        with pytest.raises(QueuePersistenceError) as exc_info:
            await queue.enqueue(QueuedOperation(id="b", kind="k"))

        assert exc_info.value.operation_id == "b"
        assert queue.get("b") is None
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_non_serializable_payload_is_rejected(self, queue):
        with pytest.raises(QueuePersistenceError):
            await queue.enqueue(QueuedOperation(id="a", kind="k", payload=object()))
        assert len(queue) == 0

    def test_kind_required(self):
        with pytest.raises(ValueError):
            QueuedOperation(kind="")


class TestDrain:
    @pytest.mark.asyncio
    async def test_replays_in_order_and_removes(self, queue, memory_storage):
        for i in range(3):
            await queue.enqueue(QueuedOperation(id=f"op{i}", kind="submission.save", payload=i))
        replay = _Recorder()

        report = await queue.drain(replay)

        assert [c[1] for c in replay.calls] == ["op0", "op1", "op2"]
        assert report.replayed == ["op0", "op1", "op2"]
        assert report.remaining == 0
        assert report.ok
        assert memory_storage.list_keys("queue:") == []

    @pytest.mark.asyncio
    async def test_failure_stops_only_its_partition(self, queue):
        await queue.enqueue(QueuedOperation(id="t1", kind="team.update"))
        await queue.enqueue(QueuedOperation(id="s1", kind="submission.save"))
        await queue.enqueue(QueuedOperation(id="t2", kind="team.update"))
        await queue.enqueue(QueuedOperation(id="s2", kind="submission.save"))
        replay = _Recorder(fail_ids={"t1"})

        report = await queue.drain(replay)

        assert sorted(report.replayed) == ["s1", "s2"]
        assert list(report.failed) == ["t1"]
        assert [op.id for op in queue.pending()] == ["t1", "t2"]
        assert "t2" not in [c[1] for c in replay.calls]
        failed = queue.get("t1")
        assert failed.attempts == 1
        assert "replay of t1 failed" in failed.last_error

    @pytest.mark.asyncio
    async def test_failed_entry_retried_on_next_drain(self, queue):
        await queue.enqueue(QueuedOperation(id="a", kind="k"))
        await queue.drain(_Recorder(fail_ids={"a"}))

        report = await queue.drain(_Recorder())

        assert report.replayed == ["a"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_partitions_replay_concurrently(self, queue):
        await queue.enqueue(QueuedOperation(id="a", kind="k1"))
        await queue.enqueue(QueuedOperation(id="b", kind="k2"))
        both_started = asyncio.Event()
        started = []

        async def replay(op):
            started.append(op.id)
            if len(started) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)

        report = await queue.drain(replay)
        assert sorted(report.replayed) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_concurrent_drain_is_skipped(self, queue):
        await queue.enqueue(QueuedOperation(id="a", kind="k"))
        release = asyncio.Event()
        calls = []

        async def slow_replay(op):
            calls.append(op.id)
            await release.wait()

        first = asyncio.create_task(queue.drain(slow_replay))
        await asyncio.sleep(0.01)
        second = await queue.drain(slow_replay)
        release.set()
        first_report = await first

        assert second.skipped is True
        assert not second.ok
        assert first_report.replayed == ["a"]
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_remove_failure_pauses_partition_and_holds_drain_lock(self):
        class GlitchyStorage(MemoryKeyValueStorage):
            def __init__(self):
                super().__init__()
                self.fail_next_remove = True

            def remove(self, key):
                if self.fail_next_remove and key.endswith("a1"):
                    self.fail_next_remove = False
                    raise StorageError("disk glitch")
                return super().remove(key)

        queue = OfflineQueue(GlitchyStorage())
        await queue.enqueue(QueuedOperation(id="a1", kind="a"))
        await queue.enqueue(QueuedOperation(id="b1", kind="b"))
        await queue.enqueue(QueuedOperation(id="b2", kind="b"))
        gate = asyncio.Event()
        calls = []

        async def replay(op):
            calls.append(op.id)
            if op.kind == "b":
                await gate.wait()

        first = asyncio.create_task(queue.drain(replay))
        await asyncio.sleep(0.01)
        second = await queue.drain(replay)
        gate.set()
        report = await first

        assert second.skipped is True
        assert "a1" in report.failed
        assert report.replayed == ["b1", "b2"]
        assert calls == ["a1", "b1", "b2"]
        assert [op.id for op in queue.pending()] == ["a1"]

        retry = await queue.drain(replay)
        assert retry.replayed == ["a1"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_unexpected_partition_error_does_not_escape_drain(self, queue, caplog):
        await queue.enqueue(QueuedOperation(id="a1", kind="a"))
        await queue.enqueue(QueuedOperation(id="b1", kind="b"))

        async def reject(op):
            raise ConnectionResetError("offline again")

        with patch.object(queue, "_record_failure", side_effect=RuntimeError("bookkeeping bug")):
            report = await queue.drain(reject)

        assert report.remaining == 2
        assert "Drain of a partition aborted" in caplog.text
        assert (await queue.drain(_Recorder())).skipped is False

    @pytest.mark.asyncio
    async def test_replaced_during_replay_is_kept(self, queue):
        await queue.enqueue(QueuedOperation(id="draft", kind="form.autosave", payload="v1"))

        async def replay(op):
            await queue.enqueue(QueuedOperation(id="draft", kind="form.autosave", payload="v2"))

        report = await queue.drain(replay)

        assert report.replayed == ["draft"]
        assert queue.get("draft").payload == "v2"
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_empty_drain(self, queue):
        report = await queue.drain(_Recorder())
        assert report.replayed == [] and report.remaining == 0 and report.ok


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_discard_and_clear(self, queue):
        await queue.enqueue(QueuedOperation(id="a", kind="k"))
        await queue.enqueue(QueuedOperation(id="b", kind="k"))

        assert await queue.discard("a") is True
        assert await queue.discard("a") is False
        assert await queue.clear() == 1
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_pending_by_kind(self, queue):
        await queue.enqueue(QueuedOperation(id="a", kind="k1"))
        await queue.enqueue(QueuedOperation(id="b", kind="k2"))
        assert [op.id for op in queue.pending("k2")] == ["b"]

    @pytest.mark.asyncio
    async def test_purge_older_than(self, queue):
        old = datetime.now(timezone.utc) - timedelta(days=10)
        await queue.enqueue(QueuedOperation(id="old", kind="k", enqueued_at=old))
        await queue.enqueue(QueuedOperation(id="new", kind="k"))

        purged = await queue.purge_older_than(timedelta(days=7).total_seconds())

        assert purged == ["old"]
        assert [op.id for op in queue.pending()] == ["new"]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        first = OfflineQueue(FileKeyValueStorage(tmp_path))
        await first.enqueue(QueuedOperation(id="a", kind="k", payload={"x": 1}))
        await first.enqueue(QueuedOperation(id="b", kind="k", payload={"x": 2}))
        await first.enqueue(QueuedOperation(id="a", kind="k", payload={"x": 3}))

        second = OfflineQueue(FileKeyValueStorage(tmp_path))
        await second.open()

        assert second.durable is True
        assert [(op.id, op.payload) for op in second.pending()] == [("a", {"x": 3}), ("b", {"x": 2})]
        added = await second.enqueue(QueuedOperation(id="c", kind="k"))
        assert added.sequence == 2

    @pytest.mark.asyncio
    async def test_corrupt_entry_skipped_on_open(self, memory_storage):
        memory_storage.set("queue:bad", {"kind": ""})
        memory_storage.set("queue:good", QueuedOperation(id="good", kind="k").model_dump(mode="json"))

        queue = OfflineQueue(memory_storage)
        await queue.open()

        assert [op.id for op in queue.pending()] == ["good"]

    @pytest.mark.asyncio
    async def test_unavailable_storage_degrades_to_memory(self):
        class BrokenStorage(MemoryKeyValueStorage):
            durable = True

            def check(self):
                raise StorageUnavailableError("disk gone")

        queue = OfflineQueue(BrokenStorage())
        op = await queue.enqueue(QueuedOperation(id="a", kind="k"))

        assert queue.durable is False
        assert queue.get("a") == op
