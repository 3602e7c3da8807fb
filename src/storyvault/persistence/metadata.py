"""Story metadata: key/value pairs shared by every save of a story."""

from __future__ import annotations

from typing import Any

from storyvault.storage.legacy import KeyValueStore

METADATA_KEY = "metadata"


def _check_key(key: Any, operation: str) -> None:
    if not isinstance(key, str):
        raise TypeError(
            f"StoryMetadata.{operation} key must be a string (received: {type(key).__name__})"
        )


class StoryMetadata:
    """Cross-save metadata kept under one key of the legacy store."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def _load(self) -> dict[str, Any]:
        return self.store.get(METADATA_KEY) or {}

    def clear(self) -> None:
        self.store.delete(METADATA_KEY)

    def delete(self, key: str) -> None:
        _check_key(key, "delete")
        data = self._load()
        if key not in data:
            return
        del data[key]
        if data:
            self.store.set(METADATA_KEY, data)
        else:
            self.store.delete(METADATA_KEY)

    def entries(self) -> list[tuple[str, Any]]:
        return list(self._load().items())

    def get(self, key: str) -> Any:
        _check_key(key, "get")
        return self._load().get(key)

    def has(self, key: str) -> bool:
        _check_key(key, "has")
        return key in self._load()

    def keys(self) -> list[str]:
        return list(self._load())

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``; None deletes the key."""
        _check_key(key, "set")
        if value is None:
            self.delete(key)
            return
        data = self._load()
        data[key] = value
        self.store.set(METADATA_KEY, data)

    @property
    def size(self) -> int:
        return len(self._load())
