"""
Tests for the SQLite object store.

Same contract as the memory store, plus durability across connections and
rollback of failed transactions on disk.
"""

import pytest

from storyvault.core.errors import BackendUnavailableError, ConstraintError, TransactionAbortedError
from storyvault.storage.object_store import TransactionMode
from storyvault.storage.sqlite_store import SQLiteObjectStore


def create_tables(db, old_version):
    if old_version < 1:
        db.create_object_store("saves", "slot")
        db.create_object_store("details", "slot")


@pytest.fixture
def backend(tmp_path):
    return SQLiteObjectStore(tmp_path / "db")


@pytest.fixture
async def db(backend):
    database = await backend.open("saves-db", 1, create_tables)
    yield database
    database.close()


async def read(db, store, key):
    tx = db.transaction(store)
    request = tx.object_store(store).get(key)
    await tx.complete()
    return request.result


class TestSQLiteOpen:
    """Tests for creating and reopening database files."""

    @pytest.mark.asyncio
    async def test_creates_file(self, backend, db):
        assert backend.path_for("saves-db").exists()
        assert db.object_store_names == ["details", "saves"]
        assert db.key_path("saves") == "slot"

    @pytest.mark.asyncio
    async def test_reopen_keeps_schema_and_data(self, backend, db):
        tx = db.transaction(["saves"], TransactionMode.READWRITE)
        tx.object_store("saves").add({"slot": 1, "data": {"title": "A"}})
        await tx.complete()
        db.close()

        calls = []
        reopened = await backend.open("saves-db", 1, lambda d, v: calls.append(v))
        try:
            assert calls == []
            assert reopened.version == 1
            assert await read(reopened, "saves", 1) == {"slot": 1, "data": {"title": "A"}}
        finally:
            reopened.close()

    @pytest.mark.asyncio
    async def test_older_version_rejected(self, backend, db):
        db.close()
        with pytest.raises(BackendUnavailableError):
            await backend.open("saves-db", 0)

    @pytest.mark.asyncio
    async def test_failed_upgrade(self, backend):
        def broken(db, old_version):
            raise RuntimeError("boom")

        with pytest.raises(BackendUnavailableError):
            await backend.open("broken", 1, broken)

        calls = []
        db = await backend.open("broken", 1, lambda d, v: calls.append(v))
        db.close()
        assert calls == [0]

    @pytest.mark.asyncio
    async def test_unusable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(BackendUnavailableError):
            await SQLiteObjectStore(blocker).open("x", 1, create_tables)


class TestSQLiteTransactions:
    """Tests for reads, writes and rollback."""

    @pytest.mark.asyncio
    async def test_round_trips_structured_values(self, db):
        value = {
            "slot": 2,
            "data": {"index": 0, "history": [{"title": "A", "variables": {"n": None, "bag": [1, "two"]}}]},
        }
        tx = db.transaction(["saves"], TransactionMode.READWRITE)
        tx.object_store("saves").add(value)
        await tx.complete()
        assert await read(db, "saves", 2) == value

    @pytest.mark.asyncio
    async def test_get_all_ordered(self, db):
        tx = db.transaction(["saves"], TransactionMode.READWRITE)
        for slot in (5, 0, 3):
            tx.object_store("saves").add({"slot": slot})
        await tx.complete()

        tx = db.transaction("saves")
        request = tx.object_store("saves").get_all()
        await tx.complete()
        assert [row["slot"] for row in request.result] == [0, 3, 5]

    @pytest.mark.asyncio
    async def test_constraint_rolls_back_both_tables(self, db):
        tx = db.transaction(["saves", "details"], TransactionMode.READWRITE)
        tx.object_store("saves").add({"slot": 1, "data": "old"})
        tx.object_store("details").add({"slot": 1, "data": "old details"})
        await tx.complete()

        tx = db.transaction(["saves", "details"], TransactionMode.READWRITE)
        tx.object_store("details").delete(1)
        tx.object_store("details").add({"slot": 1, "data": "new details"})
        tx.object_store("saves").add({"slot": 1, "data": "new"})
        with pytest.raises(ConstraintError):
            await tx.complete()

        assert (await read(db, "saves", 1))["data"] == "old"
        assert (await read(db, "details", 1))["data"] == "old details"

    @pytest.mark.asyncio
    async def test_unpackable_value_aborts(self, db):
        tx = db.transaction(["saves"], TransactionMode.READWRITE)
        tx.object_store("saves").add({"slot": 1, "data": object()})
        with pytest.raises(TransactionAbortedError):
            await tx.complete()
        assert await read(db, "saves", 1) is None

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, db):
        tx = db.transaction(["saves"], TransactionMode.READWRITE)
        for slot in (1, 2, 3):
            tx.object_store("saves").add({"slot": slot})
        tx.object_store("saves").delete(2)
        await tx.complete()
        assert await read(db, "saves", 2) is None
        assert await read(db, "saves", 3) == {"slot": 3}

        tx = db.transaction(["saves"], TransactionMode.READWRITE)
        tx.object_store("saves").clear()
        await tx.complete()
        assert await read(db, "saves", 1) is None
