"""
Moment history state machine.

A moment is one recorded point of the story: the title of the passage that
was entered plus a deep copy of the story variables at that point (and the
PRNG pull, when a PRNG is configured). The history is a stack of moments
with a cursor marking the present; moments above the cursor form the redo
buffer and are discarded when a new moment is created from below the top.

States:
=======
    EMPTY  (active_index == -1)  --create-->  ACTIVE
    ACTIVE --create / go_to / go-->  ACTIVE

Moment wire shape:
    {"title": str, "variables": dict, "pull": int (optional)}
"""

from __future__ import annotations

import copy
import logging
import random as _random
from collections.abc import Callable
from typing import Any

from storyvault.core.diff import DiffEngine, get_diff_engine
from storyvault.core.errors import MomentIndexError, StructuralError
from storyvault.core.prng import PRNG

logger = logging.getLogger(__name__)

Moment = dict[str, Any]
HistoryObserver = Callable[["MomentHistory"], None]


def moment_create(title: Any = None, variables: dict[str, Any] | None = None) -> Moment:
    """Return a new moment owning a deep copy of ``variables``."""
    return {
        "title": "" if title is None else str(title),
        "variables": {} if variables is None else copy.deepcopy(variables),
    }


def history_delta_encode(history: Any, diff: DiffEngine | None = None) -> list[Any] | None:
    """
    Delta-encode a list of moments.

    The first element stays a full moment, every following element is the
    difference from its predecessor.

    Returns:
        Encoded list, ``[]`` for an empty list, ``None`` for non-list input
    """
    if not isinstance(history, list):
        return None
    if not history:
        return []

    diff = diff or get_diff_engine()
    delta: list[Any] = [history[0]]
    for i in range(1, len(history)):
        delta.append(diff.diff(history[i - 1], history[i]))
    return delta


def history_delta_decode(delta: Any, diff: DiffEngine | None = None) -> list[Moment] | None:
    """
    Rebuild a list of moments from its delta encoding.

    Returns:
        Decoded list, ``[]`` for an empty list, ``None`` for non-list input
    """
    if not isinstance(delta, list):
        return None
    if not delta:
        return []

    diff = diff or get_diff_engine()
    history: list[Moment] = [copy.deepcopy(delta[0])]
    for i in range(1, len(delta)):
        history.append(diff.patch(history[i - 1], delta[i]))
    return history


def reduce_history_size(snapshot: dict[str, Any], target_size: int) -> dict[str, Any]:
    """
    Trim a snapshot's history to ``target_size`` moments around its index.

    The window is centered on the active moment. When the active moment sits
    closer to the start, the window is pinned to the start if the radius
    reaches it; closer to the end, it is pinned to the end. Titles of moments
    cut from the start are appended to ``snapshot["expired"]`` and the index
    is shifted to stay on the same moment.

    Operates in place on ``{"index", "history", "expired"?}`` and returns it.
    """
    if not target_size:
        return snapshot

    current_index = snapshot["index"]
    history = snapshot["history"]
    length = len(history)
    target_size = min(length, target_size)
    inverted_index = length - 1 - current_index
    radius = target_size // 2

    if current_index < inverted_index:
        # [* i * * * *]
        start = 0 if radius >= current_index else current_index - radius
    else:
        # [* * * * i *]
        start = length - target_size if radius >= inverted_index else current_index - radius

    snapshot["index"] = current_index - start
    expired = snapshot.setdefault("expired", [])
    expired.extend(moment["title"] for moment in history[:start])
    snapshot["history"] = history[start:start + target_size]

    logger.debug(
        f"Reduced history from {length} to {target_size} moments "
        f"(start={start}, index {current_index} -> {snapshot['index']})"
    )
    return snapshot


class MomentHistory:
    """
    Linear, navigable history of moments.

    Example:
        history = MomentHistory(max_states=50)
        history.create("Start")
        history.variables["gold"] = 10
        history.create("Forest")
        history.go(-1)            # back to "Start"
        history.create("Cave")    # "Forest" is discarded
    """

    def __init__(
        self,
        max_states: int = 100,
        max_expired: int = 100,
        diff: DiffEngine | None = None,
        prng: PRNG | None = None,
    ):
        if max_states < 1:
            raise ValueError(f"max_states must be at least 1, got {max_states}")
        if max_expired < 0:
            raise ValueError(f"max_expired must be non-negative, got {max_expired}")

        self.max_states = max_states
        self.max_expired = max_expired
        self.diff = diff or get_diff_engine()

        self._history: list[Moment] = []
        self._active: Moment = moment_create()
        self._active_index = -1
        self._expired: list[str] = []
        self._prng = prng
        self._temporary: dict[str, Any] = {}
        self._observers: list[HistoryObserver] = []

    # ==================== Observers ====================

    def subscribe(self, observer: HistoryObserver) -> None:
        """Register a callback invoked with this history after every activation."""
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: HistoryObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self) -> None:
        for observer in list(self._observers):
            observer(self)

    # ==================== Moments ====================

    @property
    def active(self) -> Moment:
        """The working copy of the present moment."""
        return self._active

    @property
    def active_index(self) -> int:
        return self._active_index

    @property
    def title(self) -> str:
        return self._active["title"]

    @property
    def variables(self) -> dict[str, Any]:
        return self._active["variables"]

    @property
    def temporary(self) -> dict[str, Any]:
        """Scratch variables that never enter the history."""
        return self._temporary

    def clear_temporary(self) -> None:
        self._temporary = {}

    def activate(self, moment: Moment | int) -> Moment:
        """
        Make a moment the present.

        Accepts a moment dict (restoring a snapshot) or an index into the
        history. The active copy is independent of the stored moment. The
        PRNG, when enabled, is rewound to the moment's recorded pull.

        Raises:
            StructuralError: ``moment`` is None or of an unsupported type
            MomentIndexError: index on an empty history, or out of bounds
        """
        if moment is None:
            raise StructuralError("Moment activation attempted with None")

        if isinstance(moment, dict):
            self._active = copy.deepcopy(moment)
        elif isinstance(moment, int) and not isinstance(moment, bool):
            if self.is_empty():
                raise MomentIndexError("Moment activation attempted with index on empty history")
            if moment < 0 or moment >= self.size:
                raise MomentIndexError(
                    f"Moment activation attempted with out-of-bounds index; "
                    f"need [0, {self.size - 1}], got {moment}"
                )
            self._active = copy.deepcopy(self._history[moment])
        else:
            raise StructuralError(
                f"Moment activation attempted with a {type(moment).__name__}; "
                f"must be a moment dict or a valid history index"
            )

        if self._prng is not None:
            self._prng = PRNG(self._prng.seed, self._active.get("pull", 0))

        self._notify()
        return self._active

    # ==================== History ====================

    @property
    def history(self) -> list[Moment]:
        return self._history

    @property
    def length(self) -> int:
        """Number of moments up to and including the present."""
        return self._active_index + 1

    @property
    def size(self) -> int:
        """Number of moments including the redo buffer."""
        return len(self._history)

    def __len__(self) -> int:
        return self.length

    def is_empty(self) -> bool:
        return not self._history

    @property
    def current(self) -> Moment | None:
        """Stored (pre-play) version of the present moment."""
        return self._history[self._active_index] if self._history else None

    @property
    def top(self) -> Moment | None:
        return self._history[-1] if self._history else None

    @property
    def bottom(self) -> Moment | None:
        return self._history[0] if self._history else None

    def index(self, index: int) -> Moment | None:
        """Moment at ``index``; None beyond the present."""
        if self.is_empty() or index < 0 or index > self._active_index:
            return None
        return self._history[index]

    def peek(self, offset: int = 0) -> Moment | None:
        """Moment ``offset`` steps back from the present."""
        if self.is_empty():
            return None
        length_offset = 1 + (abs(offset) if offset else 0)
        if length_offset > self.length:
            return None
        return self._history[self.length - length_offset]

    def has(self, title: str | None) -> bool:
        """Whether a moment titled ``title`` exists at or below the present."""
        if self.is_empty() or not title:
            return False
        return any(
            self._history[i]["title"] == title for i in range(self._active_index, -1, -1)
        )

    @property
    def expired(self) -> list[str]:
        """Titles of moments that fell off the bottom of the stack."""
        return self._expired

    @property
    def turns(self) -> int:
        return len(self._expired) + self.length

    @property
    def titles(self) -> list[str]:
        """Titles of every played moment, expired ones first."""
        return self._expired + [moment["title"] for moment in self._history[:self.length]]

    def has_played(self, title: str | None) -> bool:
        if not title:
            return False
        if title in self._expired:
            return True
        return any(moment["title"] == title for moment in self._history[:self.length])

    def create(self, title: Any) -> int:
        """
        Push a new moment built from the present variables.

        Future moments are discarded first. When the stack outgrows
        ``max_states``, moments are evicted from the bottom and their titles
        recorded in ``expired`` (itself capped by ``max_expired``).

        Returns:
            The new history length
        """
        logger.debug(f"Creating moment {title!r}")

        if self.length < self.size:
            logger.debug(f"Non-top push; discarding {self.size - self.length} future moments")
            del self._history[self.length:]

        self._history.append(moment_create(title, self._active["variables"]))

        if self._prng is not None:
            self._history[-1]["pull"] = self._prng.pull

        while self.size > self.max_states:
            evicted = self._history.pop(0)
            if self.max_expired:
                self._expired.append(evicted["title"])
            while len(self._expired) > self.max_expired:
                self._expired.pop(0)

        self._active_index = self.size - 1
        self.activate(self._active_index)
        return self.length

    def go_to(self, index: int | None) -> bool:
        """Move the cursor to ``index``; False when out of range or unchanged."""
        if (
            index is None
            or not isinstance(index, int)
            or index < 0
            or index >= self.size
            or index == self._active_index
        ):
            return False

        logger.debug(f"History go_to {index} (from {self._active_index})")
        self._active_index = index
        self.activate(index)
        return True

    def go(self, offset: int | None) -> bool:
        """Move the cursor by ``offset``; False on no-op."""
        if not offset:
            return False
        return self.go_to(self._active_index + offset)

    def replace(self, history: list[Moment], index: int, expired: list[str] | None = None) -> None:
        """
        Install a restored history without activating it.

        Callers must follow up with ``activate(index)``.
        """
        self._history = history
        self._active_index = index
        self._expired = list(expired) if expired else []

    def restore_soft(self) -> bool:
        """Reactivate the stored present moment, dropping unsaved changes."""
        frame = self.current
        if frame is None:
            return False
        self.activate(frame)
        return True

    def reset(self) -> None:
        """Forget every moment; the PRNG restarts from its seed."""
        logger.debug("Resetting history")
        self._history = []
        self._active = moment_create()
        self._active_index = -1
        self._expired = []
        if self._prng is not None:
            self._prng = PRNG(self._prng.seed)

    # ==================== PRNG ====================

    @property
    def prng(self) -> PRNG | None:
        return self._prng

    @property
    def prng_enabled(self) -> bool:
        return self._prng is not None

    def init_prng(self, seed: float | str | None = None) -> PRNG:
        """
        Enable the seedable PRNG.

        Raises:
            RuntimeError: when moments already exist
        """
        if not self.is_empty():
            raise RuntimeError("The PRNG must be initialized before the first moment is created")
        self._prng = PRNG(seed)
        self._active["pull"] = self._prng.pull
        return self._prng

    @property
    def prng_pull(self) -> int | None:
        return self._prng.pull if self._prng is not None else None

    def set_prng_pull(self, pull: int) -> int | None:
        if self._prng is None:
            return None
        if not isinstance(pull, int) or isinstance(pull, bool):
            raise ValueError(f"Invalid PRNG pull: {pull!r}")
        self._prng.pull = pull
        return pull

    @property
    def prng_seed(self) -> float | str | None:
        return self._prng.seed if self._prng is not None else None

    def random(self) -> float:
        """Next value from the PRNG, or from ``random.random`` when none is configured."""
        return self._prng.random() if self._prng is not None else _random.random()
