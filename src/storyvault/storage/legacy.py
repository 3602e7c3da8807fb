"""
Synchronous key-value stores.

These back everything that is not a save slot in the object store: persisted
save settings, cross-save story metadata, the session snapshot, and, for
saves made before the object store existed or while it is unavailable, the
legacy save layouts.

Values are stored as JSON text, so every ``get`` returns a fresh copy.

Legacy Save Layouts:
===================
    Layout A (single key):
        "saves" -> {"autosave": save | None, "slots": [save | None, ...]}

    Layout B (one key per slot):
        "index"    -> {"slots": [...]}
        "autosave" -> save
        "slot0"    -> save for slot 1, "slot1" -> slot 2, ...

    save = {"state": snapshot, "date": int, "id": str, "title": str,
            "idx"?: any, "metadata"?: dict}
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for synchronous string-keyed stores of structured values."""

    def size(self) -> int:
        ...

    def keys(self) -> list[str]:
        ...

    def has(self, key: str) -> bool:
        ...

    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> bool:
        ...

    def delete(self, key: str) -> bool:
        ...

    def clear(self) -> bool:
        ...


def is_valid_key(key: Any) -> bool:
    return isinstance(key, str) and bool(key)


class MemoryKeyValueStore:
    """In-process key-value store holding JSON-encoded values."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    @staticmethod
    def _serialize(value: Any) -> str:
        return json.dumps(value)

    @staticmethod
    def _deserialize(text: str) -> Any:
        return json.loads(text)

    def _commit(self) -> None:
        """Hook for persisting subclasses; called after every mutation."""

    def size(self) -> int:
        return len(self._data)

    def keys(self) -> list[str]:
        return list(self._data)

    def has(self, key: str) -> bool:
        if not is_valid_key(key):
            return False
        return key in self._data

    def get(self, key: str) -> Any:
        if not is_valid_key(key):
            return None
        text = self._data.get(key)
        return None if text is None else self._deserialize(text)

    def set(self, key: str, value: Any) -> bool:
        if not is_valid_key(key):
            return False
        self._data[key] = self._serialize(value)
        self._commit()
        return True

    def delete(self, key: str) -> bool:
        if not is_valid_key(key):
            return False
        self._data.pop(key, None)
        self._commit()
        return True

    def clear(self) -> bool:
        self._data.clear()
        self._commit()
        return True


class JsonFileKeyValueStore(MemoryKeyValueStore):
    """
    Key-value store persisted to a single JSON file.

    Every mutation rewrites the file atomically (temp file, fsync, rename).
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()
        super().__init__()
        self._data = self._load()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read key-value store {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Key-value store {self.path} does not contain an object, ignoring it")
            return {}
        return {str(key): value for key, value in data.items()}

    def _commit(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)


class LegacySaveSlots:
    """
    Slot saves in layout A, used before migration and as the degraded fallback.

    Slot 0 is the autosave; slot ``n >= 1`` is ``slots[n - 1]``.
    """

    SAVES_KEY = "saves"

    def __init__(self, store: KeyValueStore, slot_count: int = 8):
        self.store = store
        self.slot_count = slot_count

    def get(self) -> dict[str, Any]:
        """Return ``{"autosave", "slots"}``, padding missing slots with None."""
        saves = self.store.get(self.SAVES_KEY) or {}
        slots = list(saves.get("slots") or [])
        if len(slots) < self.slot_count:
            slots.extend([None] * (self.slot_count - len(slots)))
        return {"autosave": saves.get("autosave"), "slots": slots}

    def _put(self, saves: dict[str, Any]) -> bool:
        return self.store.set(self.SAVES_KEY, saves)

    def load(self, slot: int) -> dict[str, Any] | None:
        saves = self.get()
        if slot == 0:
            return saves["autosave"]
        if 1 <= slot <= len(saves["slots"]):
            return saves["slots"][slot - 1]
        return None

    def save(self, slot: int, save: dict[str, Any]) -> bool:
        if slot < 0:
            raise ValueError(f"Legacy saves have no slot {slot}")
        saves = self.get()
        if slot == 0:
            saves["autosave"] = save
        else:
            if slot > len(saves["slots"]):
                saves["slots"].extend([None] * (slot - len(saves["slots"])))
            saves["slots"][slot - 1] = save
        return self._put(saves)

    def delete(self, slot: int) -> bool:
        saves = self.get()
        if slot == 0:
            saves["autosave"] = None
        elif 1 <= slot <= len(saves["slots"]):
            saves["slots"][slot - 1] = None
        else:
            return False
        return self._put(saves)


def read_layout_b(store: KeyValueStore) -> list[tuple[int, dict[str, Any]]]:
    """Collect ``(slot, save)`` pairs stored one key per slot (layout B)."""
    index = store.get("index")
    if not isinstance(index, dict) or not index.get("slots"):
        return []

    found: list[tuple[int, dict[str, Any]]] = []
    autosave = store.get("autosave")
    if autosave:
        found.append((0, autosave))
    for i in range(len(index["slots"])):
        save = store.get(f"slot{i}")
        if save:
            found.append((i + 1, save))
    return found
