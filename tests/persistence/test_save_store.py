"""
Tests for the slot-addressed save store.

Covers the two-table write, the write lock, atomic rollback, delta encoding
per slot, the story-level save/load operations and the degraded fallback
to the legacy store.
"""

import asyncio

import pytest

from storyvault.context import create_context
from storyvault.core.config import Settings
from storyvault.core.errors import BackendUnavailableError
from storyvault.core.prng import PRNG
from storyvault.persistence.quarantine import register_opaque
from storyvault.persistence.save_store import DETAILS, SaveStore
from storyvault.persistence.settings import SETTINGS_KEY
from storyvault.storage.object_store import ObjectStoreBackend, Transaction, TransactionMode


@register_opaque
class Torch:
    def __init__(self, lit):
        self.lit = lit

    def to_json(self):
        return {"lit": self.lit}

    @classmethod
    def from_json(cls, state):
        return cls(state["lit"])


class UnavailableBackend(ObjectStoreBackend):
    async def open(self, name, version, upgrade=None):
        raise BackendUnavailableError("storage disabled")


def payload(*titles, index=None):
    history = [{"title": title, "variables": {"step": i}} for i, title in enumerate(titles)]
    return {"index": len(history) - 1 if index is None else index, "history": history}


def play(history, *titles):
    for i, title in enumerate(titles):
        history.variables["step"] = i
        history.create(title)


class TestSet:
    """Tests for set/get/get_details."""

    @pytest.mark.asyncio
    async def test_autosave_round_trip(self, saves):
        assert await saves.set(0, payload("A", "B")) is True

        record = await saves.get(0)
        assert record["slot"] == 0
        assert "delta" not in record["data"]
        assert [m["title"] for m in record["data"]["history"]] == ["A", "B"]

        details = await saves.get_details()
        assert len(details) == 1
        assert details[0]["data"]["id"] == "test-story"
        assert details[0]["data"]["title"] == "B"
        assert isinstance(details[0]["data"]["date"], int)
        assert details[0]["data"]["metadata"] == {"saveId": None, "saveName": None}

    @pytest.mark.asyncio
    async def test_user_slot_delta_encoded(self, saves):
        assert await saves.set(1, payload("A", "B", "C")) is True
        data = (await saves.get(1))["data"]
        assert "history" not in data
        assert len(data["delta"]) == 3

    @pytest.mark.asyncio
    async def test_delta_disabled_by_setting(self, saves):
        saves.settings.update("useDelta", False)
        await saves.set(1, payload("A", "B"))
        assert "history" in (await saves.get(1))["data"]

    @pytest.mark.asyncio
    async def test_compressed_autosave(self, backend, history, context, legacy):
        store = SaveStore(backend, history, context.session, legacy, compress_autosave=True)
        await store.set(0, payload("A", "B"))
        assert "delta" in (await store.get(0))["data"]

    @pytest.mark.asyncio
    async def test_caller_payload_untouched(self, saves):
        data = payload("A", "B")
        await saves.set(1, data)
        assert "history" in data
        assert "delta" not in data

    @pytest.mark.asyncio
    async def test_replaces_both_rows(self, saves):
        await saves.set(1, payload("A"))
        await saves.set(1, payload("B"))
        details = await saves.get_details()
        assert [row["data"]["title"] for row in details] == ["B"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [None, {}, {"index": 0}, "history"])
    async def test_invalid_payload(self, saves, bad):
        assert await saves.set(1, bad) is False
        assert await saves.get(1) is None

    @pytest.mark.asyncio
    async def test_missing_slot(self, saves):
        assert await saves.get(7) is None

    @pytest.mark.asyncio
    async def test_get_all(self, saves):
        await saves.set(2, payload("B"))
        await saves.set(0, payload("A"))
        assert [row["slot"] for row in await saves.get_all()] == [0, 2]


class TestLocking:
    """Tests for the single write lock."""

    @pytest.mark.asyncio
    async def test_concurrent_write_rejected(self, saves):
        task = asyncio.create_task(saves.set(1, payload("A")))
        while not saves.locked:
            await asyncio.sleep(0)

        assert await saves.delete(1) is None
        assert await saves.set(2, payload("B")) is None
        assert await saves.clear() is None
        assert await saves.load_state(1) is None

        assert await task is True
        assert saves.locked is False
        assert await saves.get(2) is None

    @pytest.mark.asyncio
    async def test_lock_taken_before_first_open(self, context):
        store = context.saves
        task = asyncio.create_task(store.set(1, payload("A")))
        await asyncio.sleep(0)

        assert store.locked is True
        assert await store.delete(1) is None
        assert await task is True
        assert (await store.get(1))["data"]["delta"][0]["title"] == "A"

    @pytest.mark.asyncio
    async def test_reads_ignore_lock(self, saves):
        await saves.set(1, payload("A"))
        task = asyncio.create_task(saves.set(2, payload("B")))
        while not saves.locked:
            await asyncio.sleep(0)
        assert (await saves.get(1))["slot"] == 1
        await task

    @pytest.mark.asyncio
    async def test_lock_released_after_failure(self, saves, monkeypatch):
        def fail(rows, operation):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr("storyvault.storage.object_store.apply_operation", fail)
        assert await saves.set(1, payload("A")) is False
        assert saves.locked is False


class TestAtomicity:
    """Tests for all-or-nothing slot writes."""

    @pytest.mark.asyncio
    async def test_failed_details_write_keeps_old_save(self, saves, reported, monkeypatch):
        from storyvault.storage import object_store

        await saves.set(3, payload("Old"))
        original = object_store.apply_operation

        def fail_on_details(rows, operation):
            if operation.store == DETAILS and operation.kind.value == "add":
                raise RuntimeError("write failed")
            original(rows, operation)

        monkeypatch.setattr(object_store, "apply_operation", fail_on_details)
        assert await saves.set(3, payload("New")) is False
        monkeypatch.setattr(object_store, "apply_operation", original)

        assert (await saves.get(3))["data"]["delta"][0]["title"] == "Old"
        details = await saves.get_details()
        assert [(row["slot"], row["data"]["title"]) for row in details] == [(3, "Old")]
        assert reported
        assert saves.active is False

    @pytest.mark.asyncio
    async def test_explicit_abort_keeps_old_save(self, saves, reported, monkeypatch):
        await saves.set(3, payload("Old"))
        original = Transaction.complete

        async def abort_writes(transaction):
            if transaction.mode is TransactionMode.READWRITE:
                transaction.abort()
            await original(transaction)

        monkeypatch.setattr(Transaction, "complete", abort_writes)
        assert await saves.set(3, payload("New")) is False
        assert await saves.delete(3) is False
        monkeypatch.setattr(Transaction, "complete", original)

        assert (await saves.get(3))["data"]["delta"][0]["title"] == "Old"
        details = await saves.get_details()
        assert [(row["slot"], row["data"]["title"]) for row in details] == [(3, "Old")]
        assert len(reported) == 2
        assert saves.active is True
        assert saves.locked is False

    @pytest.mark.asyncio
    async def test_opaque_values_rejected_in_strict_mode(self, saves, reported):
        saves.reject_opaque_values = True
        data = payload("A")
        data["history"][0]["variables"]["fn"] = print
        assert await saves.set(1, data) is False
        assert await saves.get(1) is None
        assert reported

    @pytest.mark.asyncio
    async def test_unstorable_values_rejected_before_writing(self, saves, reported):
        await saves.set(1, payload("Old"))
        data = payload("New")
        data["history"][0]["variables"]["seen"] = {"cave", "forest"}

        assert await saves.set(1, data) is False
        assert "['seen']" in str(reported[0][1])
        assert saves.active is True
        assert (await saves.get(1))["data"]["delta"][0]["title"] == "Old"


class TestDelete:
    """Tests for delete/clear."""

    @pytest.mark.asyncio
    async def test_delete(self, saves):
        await saves.set(1, payload("A"))
        await saves.set(2, payload("B"))
        assert await saves.delete(1) is True
        assert await saves.get(1) is None
        assert [row["slot"] for row in saves.details] == [2]

    @pytest.mark.asyncio
    async def test_delete_missing_slot(self, saves):
        assert await saves.delete(9) is True

    @pytest.mark.asyncio
    async def test_clear(self, saves):
        await saves.set(0, payload("A"))
        await saves.set(4, payload("B"))
        assert await saves.clear() is True
        assert await saves.get_all() == []
        assert saves.details == []


class TestSaveLoadState:
    """Tests for save_state/load_state against the live history."""

    @pytest.mark.asyncio
    async def test_round_trip(self, context, saves):
        history = context.history
        play(history, "Start", "Forest", "Cave")

        assert await saves.save_state(1) is True
        save_id = history.variables["saveId"]
        assert 10000 <= save_id < 100000
        assert all(m["variables"]["saveId"] == save_id for m in history.history)

        context.reset()
        assert history.is_empty()

        assert await saves.load_state(1) is True
        assert history.title == "Cave"
        assert history.titles == ["Start", "Forest", "Cave"]
        assert history.variables["saveId"] == save_id
        assert history.variables["step"] == 2

    @pytest.mark.asyncio
    async def test_details_from_save(self, context, saves):
        play(context.history, "Start")
        context.history.variables["saveName"] = "Run one"
        await saves.save_state(2, title="Chapter 1", metadata={"chapter": 1})

        data = saves.details[0]["data"]
        assert data["title"] == "Chapter 1"
        assert data["id"] == "test-story"
        assert data["metadata"]["chapter"] == 1
        assert data["metadata"]["saveId"] == context.history.variables["saveId"]

    @pytest.mark.asyncio
    async def test_prng_resumes(self, context, saves):
        history = context.history
        history.init_prng(0.5)
        history.create("Start")
        history.random()
        history.random()
        history.create("Dice")
        pull = history.prng_pull

        await saves.save_state(0)
        context.reset()
        assert history.prng_pull == 0

        await saves.load_state(0)
        assert history.prng_pull == pull
        assert history.random() == PRNG(0.5, pull).random()

    @pytest.mark.asyncio
    async def test_save_depth(self, context, saves):
        saves.save_depth = 2
        play(context.history, "A", "B", "C", "D")
        await saves.save_state(0)
        history = (await saves.get(0))["data"]["history"]
        assert [m["title"] for m in history] == ["C", "D"]

    @pytest.mark.asyncio
    async def test_empty_slot(self, saves):
        assert await saves.load_state(5) is False

    @pytest.mark.asyncio
    async def test_handlers(self, context, saves):
        saved = []
        loaded = []

        @saves.on_save
        def tag_save(full_save, info):
            saved.append(info["type"])
            full_save["metadata"] = {"tagged": True}

        saves.on_load(lambda full_save: loaded.append(full_save["title"]))

        play(context.history, "Start")
        await saves.save_state(0)
        await saves.save_state(3)
        assert saved == ["autosave", "slot"]
        assert saves.details[1]["data"]["metadata"]["tagged"] is True

        await saves.load_state(3)
        assert loaded == ["Start"]

    @pytest.mark.asyncio
    async def test_quarantined_values_revived(self, context, saves):
        history = context.history
        history.variables["torch"] = Torch(True)
        play(history, "Start", "Tunnel")

        assert await saves.save_state(0) is True
        stored = (await saves.get(0))["data"]["history"][-1]
        assert stored["quarantine"] == ["['torch']"]
        assert isinstance(stored["variables"]["torch"], str)

        context.reset()
        assert await saves.load_state(0) is True
        assert isinstance(history.variables["torch"], Torch)
        assert history.variables["torch"].lit is True
        assert "quarantine" not in history.current

    @pytest.mark.asyncio
    async def test_delete_state(self, context, saves):
        play(context.history, "Start")
        await saves.save_state(1)
        assert await saves.delete_state(1) is True
        assert await saves.load_state(1) is False


class TestDegradedMode:
    """Tests for falling back to the legacy store."""

    @pytest.fixture
    def degraded(self, settings, legacy, session_store, diff, reported):
        ctx = create_context(
            settings,
            backend=UnavailableBackend(),
            legacy=legacy,
            session=session_store,
            diff=diff,
            error_sink=lambda description, data: reported.append((description, data)),
        )
        yield ctx
        ctx.close()

    @pytest.mark.asyncio
    async def test_open_failure_deactivates(self, degraded, reported):
        with pytest.raises(BackendUnavailableError):
            await degraded.saves.open()
        assert degraded.saves.active is False
        assert reported[0][0].startswith("Error opening save database")

    @pytest.mark.asyncio
    async def test_reads_and_writes_fail_quietly(self, degraded):
        assert await degraded.saves.get(1) is None
        assert await degraded.saves.get_details() is None
        assert await degraded.saves.set(1, payload("A")) is False
        assert degraded.saves.locked is False

    @pytest.mark.asyncio
    async def test_save_and_load_through_legacy(self, degraded, legacy):
        with pytest.raises(BackendUnavailableError):
            await degraded.saves.open()

        play(degraded.history, "Start", "Hall")
        assert await degraded.saves.save_state(2, title="Hall") is True
        assert legacy.get("saves")["slots"][1]["title"] == "Hall"

        degraded.reset()
        assert await degraded.saves.load_state(2) is True
        assert degraded.history.title == "Hall"

        assert await degraded.saves.delete_state(2) is True
        assert await degraded.saves.load_state(2) is False

    @pytest.mark.asyncio
    async def test_inactive_setting(self, context, legacy):
        legacy.set(SETTINGS_KEY, {"active": False})
        store = SaveStore(context.saves.backend, context.history, context.session, legacy)
        assert store.active is False

        play(context.history, "Start")
        assert await store.save_state(0) is True
        assert legacy.get("saves")["autosave"]["title"] == "Start"

    @pytest.mark.asyncio
    async def test_legacy_save_quarantines_opaque_values(self, context, legacy):
        legacy.set(SETTINGS_KEY, {"active": False})
        store = SaveStore(context.saves.backend, context.history, context.session, legacy)
        history = context.history
        history.variables["torch"] = Torch(True)
        play(history, "Start", "Tunnel")

        assert await store.save_state(1) is True
        stored = legacy.get("saves")["slots"][0]["state"]["history"][-1]
        assert stored["quarantine"] == ["['torch']"]
        assert isinstance(stored["variables"]["torch"], str)
        assert isinstance(history.variables["torch"], Torch)

        context.reset()
        assert await store.load_state(1) is True
        assert isinstance(history.variables["torch"], Torch)
        assert history.variables["torch"].lit is True
        assert "quarantine" not in history.current

    @pytest.mark.asyncio
    async def test_legacy_save_rejects_opaque_values_in_strict_mode(self, context, legacy, reported):
        legacy.set(SETTINGS_KEY, {"active": False})
        store = SaveStore(
            context.saves.backend,
            context.history,
            context.session,
            legacy,
            reject_opaque_values=True,
            error_sink=lambda description, data: reported.append((description, data)),
        )
        context.history.variables["fn"] = print
        play(context.history, "Start")

        assert await store.save_state(1) is False
        assert legacy.get("saves") is None
        assert reported[0][0] == "Couldn't save slot 1 to the legacy store"

    @pytest.mark.asyncio
    async def test_negative_legacy_slot_reported(self, degraded, reported):
        degraded.saves.active = False
        play(degraded.history, "Start")
        assert await degraded.saves.save_state(-1) is False
        assert reported

    @pytest.mark.asyncio
    async def test_report_without_sink_warns(self, context):
        store = SaveStore(context.saves.backend, context.history, context.session, context.legacy)
        with pytest.warns(RuntimeWarning, match="broken"):
            store.report("broken", {"slot": 1})


class TestSQLiteSaves:
    """Round trip through the on-disk backend."""

    @pytest.mark.asyncio
    async def test_survives_restart(self, tmp_path):
        settings = Settings(backend="sqlite", data_directory=tmp_path / "saves")

        first = create_context(settings, story_id="disk")
        play(first.history, "Start", "Bridge")
        first.history.variables["torch"] = Torch(False)
        first.history.create("Keep")
        assert await first.saves.save_state(1, title="Keep") is True
        first.close()

        second = create_context(settings, story_id="disk")
        try:
            assert await second.saves.load_state(1) is True
            assert second.history.titles == ["Start", "Bridge", "Keep"]
            assert second.history.variables["torch"].lit is False
            details = await second.saves.get_details()
            assert details[0]["data"]["title"] == "Keep"
        finally:
            second.close()

    @pytest.mark.asyncio
    async def test_unstorable_value_leaves_store_active(self, tmp_path):
        settings = Settings(backend="sqlite", data_directory=tmp_path / "saves")
        reported = []
        context = create_context(
            settings,
            story_id="disk",
            error_sink=lambda description, data: reported.append((description, data)),
        )
        try:
            context.history.variables["seen"] = {"cave", "forest"}
            play(context.history, "Start")
            assert await context.saves.save_state(1) is False
            assert context.saves.active is True
            assert "can't be saved" in str(reported[0][1])

            context.reset()
            play(context.history, "Again")
            assert await context.saves.save_state(1) is True
            assert await context.saves.load_state(1) is True
            assert context.history.title == "Again"
        finally:
            context.close()
