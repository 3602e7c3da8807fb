"""
Session snapshots of the moment history.

The session store is fast but small: it holds a trimmed, delta-encoded copy
of the live history so a crashed or reloaded process can pick up where it
left off. Writes that exceed its capacity are retried with fewer moments
until they fit or nothing is left to keep.

Snapshot wire shape:
    {"index": int, "history": [moment, ...]}   or
    {"index": int, "delta": [moment, delta, ...]}
    plus optional "expired": [str, ...] and "seed": float | str
"""

from __future__ import annotations

import copy
import logging
from typing import Any

from storyvault.core.diff import DiffEngine
from storyvault.core.errors import QuotaExceededError, StructuralError
from storyvault.core.history import (
    MomentHistory,
    history_delta_decode,
    history_delta_encode,
    reduce_history_size,
)
from storyvault.storage.legacy import KeyValueStore

logger = logging.getLogger(__name__)

SESSION_KEY = "state"


def validate_snapshot(snapshot: Any) -> None:
    """
    Check the structural invariants of a snapshot.

    Raises:
        StructuralError: when the snapshot is missing, carries both or
            neither history representations, is empty, or has no index
    """
    if snapshot is None:
        raise StructuralError("State snapshot is None")
    if not isinstance(snapshot, dict):
        raise StructuralError(f"State snapshot must be a dict, got {type(snapshot).__name__}")

    has_delta = "delta" in snapshot
    has_history = "history" in snapshot
    if has_delta and has_history:
        raise StructuralError("State snapshot has both compressed and uncompressed history")
    if (
        (not has_delta and not has_history)
        or (has_delta and not snapshot["delta"])
        or (has_history and not snapshot["history"])
    ):
        raise StructuralError("State snapshot has no history or history is empty")
    if "index" not in snapshot:
        raise StructuralError("State snapshot has no index")


class SessionSnapshotManager:
    """
    Marshals the moment history to and from the session store.

    Example:
        manager = SessionSnapshotManager(history, MemorySessionStore(), max_session_states=20)
        manager.update()          # before the process goes away
        ...
        manager.restore()         # on the next start
    """

    def __init__(
        self,
        history: MomentHistory,
        store: KeyValueStore,
        max_session_states: int = 20,
        diff: DiffEngine | None = None,
    ):
        self.history = history
        self.store = store
        self.max_session_states = max_session_states
        self.diff = diff or history.diff

    def marshal(
        self,
        depth: int | None = None,
        use_delta: bool = True,
        use_clone: bool = False,
    ) -> dict[str, Any] | None:
        """
        Capture the history as a snapshot.

        Args:
            depth: Moments to keep around the present (defaults to
                ``max_session_states``); 0 disables snapshotting
            use_delta: Delta-encode the kept moments
            use_clone: Deep-copy moments instead of sharing them

        Returns:
            Snapshot dict, or None when ``depth`` is 0
        """
        if depth is None:
            depth = self.max_session_states
        if depth == 0:
            return None

        history = self.history
        snapshot: dict[str, Any] = {
            "index": history.active_index,
            "history": copy.deepcopy(history.history) if use_clone else list(history.history),
            "expired": list(history.expired),
        }

        if history.size > depth:
            reduce_history_size(snapshot, depth)

        if use_delta:
            snapshot["delta"] = history_delta_encode(snapshot.pop("history"), self.diff)

        if not snapshot["expired"]:
            del snapshot["expired"]

        if history.prng is not None:
            snapshot["seed"] = history.prng.seed

        return snapshot

    def unmarshal(self, snapshot: dict[str, Any] | None) -> None:
        """
        Replace the history with a snapshot and activate its present moment.

        Raises:
            StructuralError: malformed snapshot (see ``validate_snapshot``)
            MomentIndexError: index outside the restored history
        """
        validate_snapshot(snapshot)

        if "history" in snapshot:
            moments = copy.deepcopy(snapshot["history"])
        else:
            moments = history_delta_decode(snapshot["delta"], self.diff)

        self.history.replace(moments, snapshot["index"], snapshot.get("expired"))

        # activation rewinds the pull; only the seed needs restoring here
        if "seed" in snapshot and self.history.prng is not None:
            self.history.prng.seed = snapshot["seed"]

        self.history.activate(snapshot["index"])

    def marshal_for_save(self, depth: int = 100) -> dict[str, Any] | None:
        """Snapshot suitable for a save slot: cloned and uncompressed."""
        return self.marshal(depth=depth, use_delta=False, use_clone=True)

    def unmarshal_for_save(self, snapshot: dict[str, Any]) -> None:
        self.unmarshal(snapshot)

    def read(self) -> dict[str, Any] | None:
        """Return the stored session snapshot with its history decoded."""
        if self.max_session_states == 0:
            return None

        snapshot = self.store.get(SESSION_KEY)
        if snapshot is not None and "delta" in snapshot:
            snapshot["history"] = history_delta_decode(snapshot.pop("delta"), self.diff)
        return snapshot

    def write(self, snapshot: dict[str, Any]) -> bool:
        """
        Store a decoded snapshot, shrinking it until it fits.

        Returns:
            True if any write succeeded
        """
        if not snapshot or not snapshot.get("history"):
            raise StructuralError("Session write requires a snapshot with a decoded history")

        depth = self.max_session_states
        if not depth:
            return False

        if len(snapshot["history"]) > depth:
            reduce_history_size(snapshot, depth)
        try:
            self.store.set(SESSION_KEY, snapshot)
            return True
        except QuotaExceededError as e:
            logger.warning(f"Session write failed ({e}), reducing retained moments")

        depth = min(depth, len(snapshot["history"]))
        while depth > 1:
            depth -= 1
            reduce_history_size(snapshot, depth)
            try:
                self.store.set(SESSION_KEY, snapshot)
                logger.info(f"Session write succeeded with {depth} moments")
                return True
            except QuotaExceededError:
                continue

        logger.warning("Session write failed at every depth")
        return False

    def update(self) -> bool:
        """
        Marshal the live history into the session store.

        Starts at ``max_session_states`` and drops one moment per quota
        failure.

        Returns:
            True if the snapshot was stored
        """
        depth = min(self.max_session_states, self.history.size)
        while depth > 0:
            snapshot = self.marshal(depth=depth)
            try:
                self.store.set(SESSION_KEY, snapshot)
                return True
            except QuotaExceededError:
                logger.warning(f"Session snapshot of depth {depth} exceeds quota, reducing")
                depth -= 1
        return False

    def restore(self, soft: bool = False) -> bool:
        """
        Restore the history from the session store.

        With ``soft`` the session store is ignored and the stored present
        moment is simply reactivated.
        """
        if soft:
            return self.history.restore_soft()

        if not self.store.has(SESSION_KEY):
            return False

        snapshot = self.store.get(SESSION_KEY)
        if snapshot is None:
            return False

        logger.debug(f"Restoring session snapshot at index {snapshot.get('index')}")
        self.unmarshal(snapshot)
        return True

    def discard(self) -> None:
        """Forget the stored session snapshot."""
        self.store.delete(SESSION_KEY)
