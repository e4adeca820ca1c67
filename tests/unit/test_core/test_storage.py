"""Tests for key-value storage backends."""

import errno
import json
import os
from unittest.mock import patch

import pytest

from eventsync.core.errors import StorageError, StorageQuotaExceededError, StorageUnavailableError
from eventsync.core.storage import FileKeyValueStorage, MemoryKeyValueStorage
from eventsync.core.storage.file import decode_key, encode_key


class TestMemoryKeyValueStorage:
    def test_roundtrip_and_copy_semantics(self):
        storage = MemoryKeyValueStorage()
        value = {"team": "blue", "members": [1, 2]}
        storage.set("queue:a", value)
        value["members"].append(3)

        assert storage.get("queue:a") == {"team": "blue", "members": [1, 2]}
        assert storage.get("missing") is None

    def test_remove_and_list_keys(self):
        storage = MemoryKeyValueStorage()
        storage.set("queue:b", 1)
        storage.set("queue:a", 2)
        storage.set("other", 3)

        assert storage.list_keys("queue:") == ["queue:a", "queue:b"]
        assert storage.remove("queue:a") is True
        assert storage.remove("queue:a") is False
        assert storage.list_keys() == ["other", "queue:b"]

    def test_quota(self):
        storage = MemoryKeyValueStorage(max_entries=1)
        storage.set("a", 1)
        storage.set("a", 2)  # replacing does not count against the quota
        with pytest.raises(StorageQuotaExceededError):
            storage.set("b", 1)

    def test_non_serializable_value(self):
        with pytest.raises(StorageError):
            MemoryKeyValueStorage().set("a", object())

    def test_not_durable(self):
        assert MemoryKeyValueStorage().durable is False


class TestFileKeyValueStorage:
    def test_roundtrip(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path / "store")
        storage.set("queue:draft/1", {"title": "Robot arm"})

        assert storage.get("queue:draft/1") == {"title": "Robot arm"}
        assert storage.durable is True

    def test_values_survive_new_instance(self, tmp_path):
        FileKeyValueStorage(tmp_path).set("queue:x", [1, 2, 3])
        assert FileKeyValueStorage(tmp_path).get("queue:x") == [1, 2, 3]

    def test_keys_are_encoded_and_listed(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path)
        storage.set("queue:../../etc/passwd", 1)
        storage.set("cache:x", 2)

        assert storage.list_keys("queue:") == ["queue:../../etc/passwd"]
        assert sorted(p.name for p in tmp_path.glob("*.json")) == sorted(
            f"{encode_key(k)}.json" for k in ("queue:../../etc/passwd", "cache:x")
        )
        assert decode_key(encode_key("queue:ü")) == "queue:ü"

    def test_write_is_atomic_json(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path)
        storage.set("k", {"a": 1})
        path = tmp_path / f"{encode_key('k')}.json"

        assert json.loads(path.read_text()) == {"a": 1}
        assert not list(tmp_path.glob(".*.tmp"))

    def test_remove(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path)
        storage.set("k", 1)
        assert storage.remove("k") is True
        assert storage.remove("k") is False
        assert storage.get("k") is None

    def test_corrupt_file_raises_storage_error(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path)
        (tmp_path / f"{encode_key('k')}.json").write_text("{not json")
        with pytest.raises(StorageError):
            storage.get("k")

    def test_byte_quota(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path, max_bytes=64)
        storage.set("small", "x")
        with pytest.raises(StorageQuotaExceededError) as exc_info:
            storage.set("big", "y" * 200)
        assert exc_info.value.limit == 64
        assert storage.get("big") is None

    def test_disk_full_maps_to_quota_error(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path)
        with patch("eventsync.core.storage.file.os.fsync", side_effect=OSError(errno.ENOSPC, "No space left")):
            with pytest.raises(StorageQuotaExceededError):
                storage.set("k", 1)
        assert storage.get("k") is None
        assert not list(tmp_path.glob(".*.tmp"))

    def test_unusable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StorageUnavailableError):
            FileKeyValueStorage(blocker / "store")

    @pytest.mark.skipif(os.name == "nt" or os.geteuid() == 0, reason="permission bits not enforced")
    def test_check_detects_read_only_directory(self, tmp_path):
        storage = FileKeyValueStorage(tmp_path / "store")
        (tmp_path / "store").chmod(0o500)
        try:
            with pytest.raises(StorageUnavailableError):
                storage.check()
        finally:
            (tmp_path / "store").chmod(0o700)
