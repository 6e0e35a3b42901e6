"""Tests for the per-table Collection handle."""

from unittest.mock import AsyncMock

import pytest

from classcomm_sync.config import ClientSyncConfig
from classcomm_sync.exceptions import RecordNotFoundError, ValidationError
from classcomm_sync.protocol import OperationType, PullResult
from classcomm_sync.sync.client import SyncTransport
from classcomm_sync.sync.engine import ClientSyncEngine


@pytest.fixture
async def engine(temp_dir):
    transport = AsyncMock(spec=SyncTransport)
    transport.pull.return_value = PullResult()
    engine = await ClientSyncEngine.create(transport, ClientSyncConfig(db_path=temp_dir / "c.db"))
    yield engine
    await engine.close()


@pytest.fixture
def students(engine):
    return engine.collection("students")


class TestCollection:
    """CRUD through the local store."""

    async def test_create_generates_id(self, students):
        record = await students.create({"userId": "t1", "firstName": "Ada"})
        assert record["id"]
        assert record["_version"] == 1
        assert await students.get(record["id"]) == record

    async def test_create_ignores_caller_metadata(self, students):
        record = await students.create({"id": "s1", "userId": "t1", "_version": 99})
        assert record["_version"] == 1

    async def test_create_existing_rejected(self, students):
        await students.create({"id": "s1", "userId": "t1"})
        with pytest.raises(ValidationError):
            await students.create({"id": "s1", "userId": "t1"})

    async def test_update_merges(self, students, engine):
        await students.create({"id": "s1", "userId": "t1", "firstName": "Ada", "grade": "5"})
        record = await students.update("s1", {"grade": "6"})

        assert record["firstName"] == "Ada"
        assert record["grade"] == "6"
        assert record["_version"] == 2

        ops = await engine.get_pending_operations()
        assert [op.operation for op in ops] == [OperationType.INSERT, OperationType.UPDATE]

    async def test_update_missing(self, students):
        with pytest.raises(RecordNotFoundError):
            await students.update("nope", {"grade": "6"})

    async def test_delete_hides_record(self, students):
        await students.create({"id": "s1", "userId": "t1"})
        await students.delete("s1")

        assert await students.get("s1") is None
        tombstone = await students.get("s1", include_deleted=True)
        assert tombstone["_isDeleted"] is True
        assert await students.list() == []
        assert len(await students.list(include_deleted=True)) == 1

        with pytest.raises(RecordNotFoundError):
            await students.update("s1", {"grade": "6"})

    async def test_restore(self, students):
        await students.create({"id": "s1", "userId": "t1", "firstName": "Ada"})
        await students.delete("s1")
        record = await students.restore("s1")

        assert record["_isDeleted"] is False
        assert record["_version"] == 3
        assert record["firstName"] == "Ada"

    async def test_recreate_after_delete(self, students):
        await students.create({"id": "s1", "userId": "t1"})
        await students.delete("s1")
        record = await students.create({"id": "s1", "userId": "t1", "firstName": "New"})
        assert record["_version"] == 3

    def test_unknown_table(self, engine):
        with pytest.raises(ValidationError):
            engine.collection("grades")
