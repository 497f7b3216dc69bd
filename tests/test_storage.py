"""Tests for the durable queue store and its backends."""

import errno
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lms_sync import serialization
from lms_sync.errors import StorageError
from lms_sync.storage import DurableQueueStore, FileBackend, MemoryBackend, is_quota_error
from lms_sync.types import QueueItem, QueueItemKind, QueuePriority

KEY = "queue"
LEGACY = "legacy"


def _item(item_id="q1", enqueued_at=1):
    return QueueItem(
        id=item_id,
        kind=QueueItemKind.ASSIGNMENT_REQUEST,
        owner_id="u1",
        scope_id="c1",
        payload={"userIds": ["a"]},
        priority=QueuePriority.HIGH,
        enqueued_at=enqueued_at,
        attempts=2,
        idempotency_key="course-assign:courseId=c1:abc",
    )


def _store(backend, on_error=None):
    return DurableQueueStore(backend, key=KEY, legacy_key=LEGACY, on_error=on_error)


class _FailingBackend(MemoryBackend):
    def __init__(self, exc):
        super().__init__()
        self.exc = exc

    async def put(self, key, value):
        if self.exc is not None:
            raise self.exc
        await super().put(key, value)


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_write_then_read(self):
        store = _store(MemoryBackend())
        assert await store.write_all([_item()]) is True
        items = await store.read_all()
        assert items == [_item()]

    @pytest.mark.asyncio
    async def test_missing_record_reads_empty(self):
        assert await _store(MemoryBackend()).read_all() == []

    @pytest.mark.asyncio
    async def test_corrupt_record_reads_empty(self):
        backend = MemoryBackend({KEY: b"{not json"})
        assert await _store(backend).read_all() == []

    @pytest.mark.asyncio
    async def test_wrong_shape_reads_empty(self):
        backend = MemoryBackend({KEY: serialization.dumps({"id": "x"})})
        assert await _store(backend).read_all() == []

    @pytest.mark.asyncio
    async def test_malformed_entries_dropped(self):
        good = _item().to_dict()
        backend = MemoryBackend({KEY: serialization.dumps([good, {"id": "bad"}, 42])})
        items = await _store(backend).read_all()
        assert [i.id for i in items] == ["q1"]

    @pytest.mark.asyncio
    async def test_backend_read_error_reads_empty(self):
        backend = MemoryBackend()
        backend.get = AsyncMock(side_effect=OSError("disk gone"))
        assert await _store(backend).read_all() == []


class TestDegradation:
    @pytest.mark.asyncio
    async def test_no_backend_reports_once(self):
        on_error = MagicMock()
        store = _store(None, on_error)
        assert await store.write_all([_item()]) is False
        assert await store.write_all([_item()]) is False
        assert store.degraded is True
        on_error.assert_called_once()
        assert isinstance(on_error.call_args[0][0], StorageError)

    @pytest.mark.asyncio
    async def test_self_heals_after_successful_write(self):
        on_error = MagicMock()
        backend = _FailingBackend(OSError("io error"))
        store = _store(backend, on_error)

        assert await store.write_all([_item()]) is False
        assert store.degraded is True

        backend.exc = None
        assert await store.write_all([_item()]) is True
        assert store.degraded is False
        assert store.last_error is None

        backend.exc = OSError("again")
        await store.write_all([_item()])
        assert on_error.call_count == 2

    @pytest.mark.asyncio
    async def test_hook_failure_is_swallowed(self):
        store = _store(None, MagicMock(side_effect=RuntimeError("hook")))
        assert await store.write_all([]) is False


class TestQuotaDetection:
    def test_enospc(self):
        assert is_quota_error(OSError(errno.ENOSPC, "No space left on device"))

    def test_wrapped_in_storage_error(self):
        err = StorageError("write failed")
        err.__cause__ = OSError(errno.ENOSPC, "full")
        assert is_quota_error(err)

    def test_quota_text(self):
        assert is_quota_error(RuntimeError("QuotaExceededError"))

    def test_other_errors(self):
        assert not is_quota_error(OSError(errno.EACCES, "denied"))
        assert not is_quota_error(None)


class TestLegacyMigration:
    @pytest.mark.asyncio
    async def test_migrates_and_deletes(self):
        legacy = [
            {
                "userId": "u1",
                "courseId": "c1",
                "lessonIds": ["l1", "l2"],
                "lastLessonId": "l2",
                "enqueuedAt": 1000,
                "attempts": 3,
            }
        ]
        backend = MemoryBackend({LEGACY: serialization.dumps(legacy)})
        items = await _store(backend).migrate_legacy()

        assert LEGACY not in backend.records
        assert len(items) == 1
        item = items[0]
        assert item.id.startswith("snapshot_")
        assert item.kind == QueueItemKind.PROGRESS_SNAPSHOT
        assert item.priority == QueuePriority.MEDIUM
        assert item.owner_id == "u1"
        assert item.scope_id == "c1"
        assert item.lesson_id == "l1"
        assert item.enqueued_at == 1000
        assert item.attempts == 3
        assert item.idempotency_key.startswith("progress-snapshot:courseId=c1|userId=u1:")

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self):
        assert await _store(MemoryBackend()).migrate_legacy() == []

    @pytest.mark.asyncio
    async def test_corrupt_legacy_ignored(self):
        backend = MemoryBackend({LEGACY: b"garbage"})
        assert await _store(backend).migrate_legacy() == []

    @pytest.mark.asyncio
    async def test_unparseable_fields_fall_back(self):
        legacy = [
            {"userId": "u1", "courseId": "c1", "enqueuedAt": "2024-05-01T10:00:00Z"},
            {"userId": "u2", "courseId": "c2", "attempts": "many"},
            "not-a-record",
        ]
        backend = MemoryBackend({LEGACY: serialization.dumps(legacy)})
        with patch("lms_sync.storage.time.time", return_value=1700000000.0):
            items = await _store(backend).migrate_legacy()

        assert [i.owner_id for i in items] == ["u1", "u2"]
        assert items[0].enqueued_at == 1700000000000
        assert items[1].attempts == 0
        assert LEGACY not in backend.records

    @pytest.mark.asyncio
    async def test_bad_record_skipped_rest_kept(self):
        legacy = [{"userId": "u1", "courseId": "c1"}, {"userId": "u2", "courseId": "c2"}]
        backend = MemoryBackend({LEGACY: serialization.dumps(legacy)})
        store = _store(backend)
        real = store._from_legacy

        def convert(snapshot):
            if snapshot["userId"] == "u1":
                raise ValueError("broken")
            return real(snapshot)

        with patch.object(store, "_from_legacy", side_effect=convert):
            items = await store.migrate_legacy()
        assert [i.owner_id for i in items] == ["u2"]


class TestFileBackend:
    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        backend = FileBackend(tmp_path / "queue")
        await backend.put("lms/offline queue", b"[1,2]")
        assert await backend.get("lms/offline queue") == b"[1,2]"
        assert [p.name for p in (tmp_path / "queue").iterdir()] == ["lms_offline_queue.json"]

    @pytest.mark.asyncio
    async def test_missing_and_delete(self, tmp_path):
        backend = FileBackend(tmp_path)
        assert await backend.get("nope") is None
        await backend.delete("nope")
        await backend.put("k", b"v")
        await backend.delete("k")
        assert await backend.get("k") is None

    @pytest.mark.asyncio
    async def test_store_over_files(self, tmp_path):
        store = _store(FileBackend(tmp_path))
        await store.write_all([_item("a", 1), _item("b", 2)])
        reopened = _store(FileBackend(tmp_path))
        assert [i.id for i in await reopened.read_all()] == ["a", "b"]
