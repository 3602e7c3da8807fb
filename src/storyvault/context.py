"""
Story context: one coordinator owning every piece of persistence state.

Each context holds its own history, PRNG, session snapshot manager and
save store, so several stories (or tests) can run side by side in one
process.

Usage:
======

    context = create_context()
    context.history.create("Start")
    await context.saves.save_state(1)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storyvault.core.config import Settings, get_settings
from storyvault.core.diff import DiffEngine, get_diff_engine
from storyvault.core.history import MomentHistory
from storyvault.core.prng import PRNG
from storyvault.core.session import SessionSnapshotManager
from storyvault.persistence.metadata import StoryMetadata
from storyvault.persistence.save_store import ErrorSink, SaveStore
from storyvault.storage.legacy import JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from storyvault.storage.object_store import MemoryObjectStore, ObjectStoreBackend
from storyvault.storage.session_store import MemorySessionStore
from storyvault.storage.sqlite_store import SQLiteObjectStore

logger = logging.getLogger(__name__)

LEGACY_FILE = "legacy.json"


@dataclass
class StoryContext:
    """Everything one running story persists through."""
    settings: Settings
    diff: DiffEngine
    history: MomentHistory
    session: SessionSnapshotManager
    legacy: KeyValueStore
    saves: SaveStore
    metadata: StoryMetadata

    @property
    def prng(self) -> PRNG | None:
        return self.history.prng

    def reset(self) -> None:
        """Forget the history and the session snapshot."""
        logger.info("Resetting story context")
        self.session.discard()
        self.history.reset()

    def close(self) -> None:
        self.saves.close()


def build_backend(settings: Settings) -> ObjectStoreBackend:
    """Object store backend selected by ``settings.backend``."""
    if settings.backend == "memory":
        return MemoryObjectStore()
    return SQLiteObjectStore(settings.data_path)


def build_legacy_store(settings: Settings) -> KeyValueStore:
    if settings.backend == "memory":
        return MemoryKeyValueStore()
    return JsonFileKeyValueStore(settings.data_path / LEGACY_FILE)


def create_context(
    settings: Settings | None = None,
    *,
    backend: ObjectStoreBackend | None = None,
    legacy: KeyValueStore | None = None,
    session: KeyValueStore | None = None,
    diff: DiffEngine | None = None,
    prng: PRNG | None = None,
    story_id: str = "",
    error_sink: ErrorSink | None = None,
) -> StoryContext:
    """
    Build a fully wired StoryContext.

    Components not supplied are built from ``settings`` (the cached
    application settings when omitted).
    """
    settings = settings or get_settings()
    diff = diff or get_diff_engine()
    backend = backend or build_backend(settings)
    legacy = legacy if legacy is not None else build_legacy_store(settings)
    session_store = session if session is not None else MemorySessionStore(settings.session_quota_bytes)

    history = MomentHistory(
        max_states=settings.max_states,
        max_expired=settings.max_expired,
        diff=diff,
        prng=prng,
    )
    snapshots = SessionSnapshotManager(
        history,
        session_store,
        max_session_states=settings.max_session_states,
        diff=diff,
    )
    saves = SaveStore(
        backend,
        history,
        snapshots,
        legacy,
        db_name=settings.db_name,
        save_depth=settings.save_depth,
        compress_autosave=settings.compress_autosave,
        reject_opaque_values=settings.reject_opaque_values,
        story_id=story_id,
        error_sink=error_sink,
    )

    logger.debug(f"Created story context (backend={type(backend).__name__})")
    return StoryContext(
        settings=settings,
        diff=diff,
        history=history,
        session=snapshots,
        legacy=legacy,
        saves=saves,
        metadata=StoryMetadata(legacy),
    )
