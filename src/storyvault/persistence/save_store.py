"""
Slot-addressed save store over an asynchronous object store.

Every slot (0 is the autosave) is two rows written and deleted together in
one transaction: the full snapshot in ``saves`` and a small details record
in ``details`` used to draw the save list without reading every snapshot.

Locking:
========
    A single boolean lock is held for the duration of ``set``, ``delete``
    and ``clear``, from before the lazy open to the end of the transaction.
    Calls made while it is held are not queued; they return None ("try
    again later"). Reads never take the lock.

Degraded Mode:
=============
    Failing to open the object store, or a transaction error, sets
    ``active = False``. While inactive, ``save_state``, ``load_state`` and
    ``delete_state`` use the legacy key-value store instead.

Usage:
======

    store = SaveStore(MemoryObjectStore(), history, session, legacy)
    await store.open()
    await store.save_state(1, title="Before the cave")
    ...
    await store.load_state(1)
"""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import time
import warnings
from collections.abc import Callable
from typing import Any

from storyvault.core.errors import StoryVaultError, TransactionAbortedError
from storyvault.core.history import MomentHistory, history_delta_decode, history_delta_encode
from storyvault.core.session import SessionSnapshotManager
from storyvault.persistence.quarantine import ensure_plain, quarantine, restore
from storyvault.persistence.settings import SaveSettingsStore
from storyvault.storage.legacy import KeyValueStore, LegacySaveSlots, read_layout_b
from storyvault.storage.object_store import Database, ObjectStoreBackend, Transaction, TransactionMode

logger = logging.getLogger(__name__)

DB_VERSION = 1
SAVES = "saves"
DETAILS = "details"
KEY_PATH = "slot"

ErrorSink = Callable[[str, Any], None]
SaveHandler = Callable[[dict[str, Any], dict[str, str]], None]
LoadHandler = Callable[[dict[str, Any]], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


class SaveStore:
    """
    Asynchronous save slots for one story.

    Args:
        backend: Object store the save database lives in
        history: Moment history saved from and loaded into
        session: Snapshot manager used to marshal the history
        legacy: Key-value store with the settings and pre-migration saves
        db_name: Database name
        save_depth: Moments kept in a save
        compress_autosave: Delta-encode slot 0 like every other slot
        reject_opaque_values: Refuse callables and custom objects in
            variables instead of quarantining them
        story_id: Identifier recorded in each details record
        error_sink: Receives ``(description, data)`` for every reported
            failure; without one a RuntimeWarning is emitted
    """

    def __init__(
        self,
        backend: ObjectStoreBackend,
        history: MomentHistory,
        session: SessionSnapshotManager,
        legacy: KeyValueStore,
        db_name: str = "idb",
        save_depth: int = 100,
        compress_autosave: bool = False,
        reject_opaque_values: bool = False,
        story_id: str = "",
        error_sink: ErrorSink | None = None,
    ):
        self.backend = backend
        self.history = history
        self.session = session
        self.legacy = legacy
        self.legacy_slots = LegacySaveSlots(legacy)
        self.settings = SaveSettingsStore(legacy)
        self.db_name = db_name
        self.save_depth = save_depth
        self.compress_autosave = compress_autosave
        self.reject_opaque_values = reject_opaque_values
        self.story_id = story_id
        self.error_sink = error_sink

        self.active = self.settings.active
        self._db: Database | None = None
        self._open_lock = asyncio.Lock()
        self._lock = False
        self._migration_needed = False
        self._details: list[dict[str, Any]] = []
        self._save_handlers: list[SaveHandler] = []
        self._load_handlers: list[LoadHandler] = []
        self._save_ids = random.SystemRandom()

    # ==================== Diagnostics ====================

    def report(self, description: str, data: Any = None) -> None:
        """Surface a failure to the log and the error sink."""
        logger.error(f"{description}: {data!r}" if data is not None else description)
        if self.error_sink is not None:
            self.error_sink(description, data)
        else:
            warnings.warn(f"{description}\n{data!r}", RuntimeWarning, stacklevel=2)

    # ==================== Handlers ====================

    def on_save(self, handler: SaveHandler) -> SaveHandler:
        """Register ``handler(full_save, {"type": "autosave" | "slot"})``; usable as a decorator."""
        self._save_handlers.append(handler)
        return handler

    def on_load(self, handler: LoadHandler) -> LoadHandler:
        """Register ``handler(full_save)``, run before a loaded save is activated."""
        self._load_handlers.append(handler)
        return handler

    # ==================== Connection ====================

    @property
    def locked(self) -> bool:
        return self._lock

    @property
    def details(self) -> list[dict[str, Any]]:
        """Cached details rows from the last ``get_details`` or mutation."""
        return self._details

    def _upgrade(self, db: Database, old_version: int) -> None:
        logger.info(f"Upgrading save database '{db.name}' from version {old_version}")
        if old_version < 1:
            db.create_object_store(SAVES, KEY_PATH)
            db.create_object_store(DETAILS, KEY_PATH)
            self._migration_needed = True

    async def open(self, name: str | None = None) -> Database:
        """
        Open the save database, creating its tables on first use.

        The connection is kept for later calls. The first open of a new
        database also migrates saves from the legacy store; concurrent
        callers wait until the migration is done.

        Raises:
            BackendUnavailableError: the database can't be opened; the store
                switches to degraded mode
        """
        async with self._open_lock:
            if name and name != self.db_name:
                self.close()
                self.db_name = name
            if self._db is None or self._db.closed:
                try:
                    self._db = await self.backend.open(self.db_name, DB_VERSION, self._upgrade)
                except Exception as e:
                    self.active = False
                    self.report(f"Error opening save database '{self.db_name}'", e)
                    raise
                logger.info(f"Opened save database '{self.db_name}' (version {self._db.version})")

                if self._migration_needed:
                    self._migration_needed = False
                    await self._migrate(self._db)
            return self._db

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    async def _acquire(self, operation: str) -> bool | None:
        """
        Take the write lock, then make sure the database is open.

        The lock is taken before the first await so no other write can slip
        in while the connection is established.

        Returns:
            True when held, None if another write holds it, False when the
            database can't be opened
        """
        if self._lock:
            logger.debug(f"Save store locked, {operation} rejected")
            return None
        self._lock = True
        try:
            await self.open()
        except Exception:
            self._lock = False
            return False
        return True

    async def _complete(self, transaction: Transaction, description: str) -> None:
        try:
            await transaction.complete()
        except TransactionAbortedError as e:
            if not e.explicit:
                self.active = False
            self.report(description, e)
            raise

    # ==================== Reads ====================

    async def get(self, slot: int) -> dict[str, Any] | None:
        """The ``{"slot", "data"}`` row of a slot, or None when absent or on error."""
        try:
            db = await self.open()
            transaction = db.transaction(SAVES, TransactionMode.READONLY)
            request = transaction.object_store(SAVES).get(slot)
            await self._complete(transaction, f"Couldn't retrieve save in slot {slot}")
        except StoryVaultError:
            return None
        return request.result

    async def get_all(self) -> list[dict[str, Any]] | None:
        """Every ``saves`` row, ordered by slot."""
        try:
            db = await self.open()
            transaction = db.transaction(SAVES, TransactionMode.READONLY)
            request = transaction.object_store(SAVES).get_all()
            await self._complete(transaction, "Couldn't retrieve saves")
        except StoryVaultError:
            return None
        return request.result

    async def _fetch_details(self, db: Database) -> list[dict[str, Any]]:
        transaction = db.transaction(DETAILS, TransactionMode.READONLY)
        request = transaction.object_store(DETAILS).get_all()
        await self._complete(transaction, "Couldn't retrieve save details")
        self._details = request.result
        return self._details

    async def get_details(self) -> list[dict[str, Any]] | None:
        """Fetch every ``details`` row and refresh the cache."""
        try:
            return await self._fetch_details(await self.open())
        except StoryVaultError:
            return None

    # ==================== Writes ====================

    def _sanitize(self, history: list[dict[str, Any]]) -> None:
        """
        Make every moment's variables storable, in place.

        Raises:
            StructuralError: a value can't be stored, or is opaque while
                ``reject_opaque_values`` is set
        """
        for i, moment in enumerate(history):
            variables = moment.get("variables", {})
            ensure_plain(variables, allow_opaque=not self.reject_opaque_values)
            if self.reject_opaque_values:
                continue
            # only warn about the first moment, the rest repeat it
            paths = quarantine(variables, verbose=(i == 0))
            if paths:
                moment["quarantine"] = paths

    def _prepare(self, slot: int, payload: dict[str, Any], details: dict[str, Any] | None) -> dict[str, Any]:
        index = payload.get("index", len(payload["history"]) - 1)
        present = payload["history"][index]
        save_vars = present.get("variables", {})
        metadata = {"saveId": save_vars.get("saveId"), "saveName": save_vars.get("saveName")}

        if details is None:
            details = {"id": self.story_id, "title": present.get("title", ""), "date": _now_ms()}
        else:
            details = dict(details)
        metadata.update(details.get("metadata") or {})
        details["metadata"] = metadata

        self._sanitize(payload["history"])

        if self.settings.use_delta and (slot != 0 or self.compress_autosave):
            payload["delta"] = history_delta_encode(payload.pop("history"), self.session.diff)
        return details

    async def _write(self, db: Database, slot: int, payload: dict[str, Any], details: dict[str, Any] | None) -> bool:
        """Replace both rows of ``slot`` in one transaction; the caller holds the lock."""
        try:
            payload = copy.deepcopy(payload)
            details_item = self._prepare(slot, payload, details)

            transaction = db.transaction([SAVES, DETAILS], TransactionMode.READWRITE)
            saves = transaction.object_store(SAVES)
            saves.delete(slot)
            saves.add({KEY_PATH: slot, "data": payload})
            details_store = transaction.object_store(DETAILS)
            details_store.delete(slot)
            details_store.add({KEY_PATH: slot, "data": details_item})
            await self._complete(transaction, f"Couldn't put save in slot {slot}")
        except TransactionAbortedError:
            return False
        except Exception as e:
            self.report(f"Couldn't complete the save in slot {slot}", e)
            return False

        logger.info(f"Saved slot {slot}")
        return True

    async def set(self, slot: int, payload: dict[str, Any], details: dict[str, Any] | None = None) -> bool | None:
        """
        Write a snapshot and its details into ``slot``, replacing both rows.

        Args:
            slot: Target slot; 0 is the autosave
            payload: Snapshot with a decoded ``history``
            details: Details record; built from the payload when omitted

        Returns:
            True on commit, None while another write holds the lock, False
            for an invalid payload or any failure (never raises)
        """
        if self._lock:
            logger.debug(f"Save store locked, set({slot}) rejected")
            return None
        if not isinstance(payload, dict) or "history" not in payload:
            return False
        acquired = await self._acquire(f"set({slot})")
        if not acquired:
            return acquired

        try:
            return await self._write(self._db, slot, payload, details)
        finally:
            self._lock = False

    async def delete(self, slot: int) -> bool | None:
        """Remove both rows of a slot; None while locked."""
        acquired = await self._acquire(f"delete({slot})")
        if not acquired:
            return acquired

        try:
            transaction = self._db.transaction([SAVES, DETAILS], TransactionMode.READWRITE)
            transaction.object_store(SAVES).delete(slot)
            transaction.object_store(DETAILS).delete(slot)
            await self._complete(transaction, f"Couldn't delete save in slot {slot}")
        except StoryVaultError:
            return False
        finally:
            self._lock = False

        logger.info(f"Deleted slot {slot}")
        await self.get_details()
        return True

    async def clear(self) -> bool | None:
        """Wipe every slot; None while locked. Callers confirm first."""
        acquired = await self._acquire("clear()")
        if not acquired:
            return acquired

        try:
            transaction = self._db.transaction([SAVES, DETAILS], TransactionMode.READWRITE)
            transaction.object_store(SAVES).clear()
            transaction.object_store(DETAILS).clear()
            await self._complete(transaction, "Couldn't clear saves")
        except StoryVaultError:
            return False
        finally:
            self._lock = False

        self._details = []
        logger.info("Cleared every save slot")
        return True

    # ==================== Migration ====================

    def _new_save_id(self) -> int:
        # never drawn from the story PRNG, which would shift its stream
        return self._save_ids.randrange(10000, 100000)

    def _process_legacy_save(self, full_save: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        save = copy.deepcopy(full_save["state"])
        save.pop("jdelta", None)
        if "delta" in save:
            save["history"] = history_delta_decode(save.pop("delta"), self.session.diff)

        variables = save["history"][save["index"]]["variables"]
        if not variables.get("saveId"):
            save_id = self._new_save_id()
            for moment in save["history"]:
                moment["variables"]["saveId"] = save_id

        details = {
            "date": full_save.get("date"),
            "id": full_save.get("id"),
            "title": full_save.get("title"),
            "metadata": full_save.get("metadata")
            or {"saveId": variables.get("saveId"), "saveName": variables.get("saveName")},
        }
        if full_save.get("idx") is not None:
            details["idx"] = full_save["idx"]
        return save, details

    def _legacy_saves(self) -> list[tuple[int, dict[str, Any]]]:
        saves = self.legacy_slots.get()
        found: list[tuple[int, dict[str, Any]]] = []
        if saves["autosave"]:
            found.append((0, saves["autosave"]))
        for i, save in enumerate(saves["slots"]):
            if save:
                found.append((i + 1, save))
        if not found:
            # every slot is empty; saves may be stored one key per slot
            found = read_layout_b(self.legacy)
        return found

    async def _migrate(self, db: Database) -> int:
        migrated = 0
        for slot, full_save in self._legacy_saves():
            try:
                save, details = self._process_legacy_save(full_save)
            except (KeyError, IndexError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable legacy save in slot {slot}: {e}")
                continue
            if await self._write(db, slot, save, details):
                migrated += 1
            else:
                logger.warning(f"Couldn't migrate legacy save in slot {slot}")

        try:
            await self._fetch_details(db)
        except StoryVaultError as e:
            logger.warning(f"Couldn't refresh save details after migration: {e}")
        logger.info(f"Migrated {migrated} legacy saves")
        return migrated

    async def migrate_legacy(self) -> bool | None:
        """
        Copy legacy key-value saves into the object store, one slot at a time.

        Returns:
            True once every legacy save has been visited, None while another
            write holds the lock, False when the database can't be opened
        """
        acquired = await self._acquire("migrate_legacy()")
        if not acquired:
            return acquired

        try:
            await self._migrate(self._db)
        finally:
            self._lock = False
        return True

    # ==================== Story integration ====================

    async def _find_details(self, slot: int) -> dict[str, Any]:
        for row in self._details:
            if row[KEY_PATH] == slot:
                return row["data"]
        for row in await self.get_details() or []:
            if row[KEY_PATH] == slot:
                return row["data"]
        return {}

    def _restore_quarantined(self, state: dict[str, Any]) -> None:
        for moment in state["history"]:
            paths = moment.pop("quarantine", None)
            if paths:
                restore(moment["variables"], paths)

    def _activate(self, state: dict[str, Any], full_save: dict[str, Any]) -> None:
        for handler in self._load_handlers:
            handler(full_save)
        self.session.unmarshal_for_save(state)

    async def load_state(self, slot: int) -> bool | None:
        """
        Load a slot into the history.

        Returns:
            True when loaded, False when the slot is empty, None while locked

        Raises:
            StructuralError: the stored snapshot is malformed
        """
        if self._lock:
            logger.debug(f"Save store locked, load_state({slot}) rejected")
            return None

        if not self.active:
            return self._load_legacy(slot)

        record = await self.get(slot)
        if record is None:
            return False

        state = record["data"]
        if "delta" in state:
            state["history"] = history_delta_decode(state.pop("delta"), self.session.diff)
        self._restore_quarantined(state)

        details = await self._find_details(slot)
        if "idx" in details:
            state["idx"] = details["idx"]
        full_save = {"state": state, **details}
        self._activate(state, full_save)
        logger.info(f"Loaded slot {slot}")
        return True

    def _load_legacy(self, slot: int) -> bool:
        full_save = self.legacy_slots.load(slot)
        if full_save is None:
            return False
        state = full_save["state"]
        if "delta" in state:
            state["history"] = history_delta_decode(state.pop("delta"), self.session.diff)
        self._restore_quarantined(state)
        self._activate(state, full_save)
        logger.info(f"Loaded slot {slot} from the legacy store")
        return True

    async def save_state(
        self,
        slot: int,
        title: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool | None:
        """
        Save the present history into a slot.

        Assigns a save id to the playthrough when it has none, runs the
        save handlers and writes the snapshot.

        Returns:
            True on success, False on failure, None while locked
        """
        if self._lock:
            logger.debug(f"Save store locked, save_state({slot}) rejected")
            return None

        if not self.history.variables.get("saveId"):
            save_id = self._new_save_id()
            self.history.variables["saveId"] = save_id
            for moment in self.history.history:
                moment["variables"]["saveId"] = save_id

        snapshot = self.session.marshal_for_save(self.save_depth)
        if snapshot is None:
            return False

        full_save: dict[str, Any] = {
            "state": snapshot,
            "date": _now_ms(),
            "id": self.story_id,
            "title": title or self.history.title,
        }
        if metadata is not None:
            full_save["metadata"] = metadata

        for handler in self._save_handlers:
            handler(full_save, {"type": "autosave" if slot <= 0 else "slot"})

        if not self.active:
            try:
                self._sanitize(full_save["state"]["history"])
                return self.legacy_slots.save(slot, full_save)
            except (TypeError, ValueError) as e:
                self.report(f"Couldn't save slot {slot} to the legacy store", e)
                return False

        details = {key: value for key, value in full_save.items() if key != "state"}
        result = await self.set(slot, full_save["state"], details)
        await self.get_details()
        return result

    async def delete_state(self, slot: int) -> bool | None:
        """Delete a slot from whichever store is in use."""
        if not self.active:
            return self.legacy_slots.delete(slot)
        return await self.delete(slot)
