"""
Capacity-bounded transient store for session snapshots.

Mirrors a browser session store: values survive a reload of the story but
not the end of the process group, and the whole store has a byte budget.
Writes that would exceed the budget raise ``QuotaExceededError`` and leave
the previous value in place.
"""

from __future__ import annotations

import logging
from typing import Any

from storyvault.core.errors import QuotaExceededError
from storyvault.storage.legacy import MemoryKeyValueStore, is_valid_key

logger = logging.getLogger(__name__)

DEFAULT_QUOTA_BYTES = 5 * 1024 * 1024


class MemorySessionStore(MemoryKeyValueStore):
    """In-memory session store with a total size quota (UTF-8 bytes of keys and values)."""

    def __init__(self, quota_bytes: int = DEFAULT_QUOTA_BYTES):
        if quota_bytes < 0:
            raise ValueError(f"quota_bytes must be non-negative, got {quota_bytes}")
        self.quota_bytes = quota_bytes
        super().__init__()

    @staticmethod
    def _entry_size(key: str, text: str) -> int:
        return len(key.encode("utf-8")) + len(text.encode("utf-8"))

    @property
    def used_bytes(self) -> int:
        return sum(self._entry_size(key, text) for key, text in self._data.items())

    def set(self, key: str, value: Any) -> bool:
        if not is_valid_key(key):
            return False

        text = self._serialize(value)
        previous = self._data.get(key)
        used = self.used_bytes - (self._entry_size(key, previous) if previous is not None else 0)
        needed = used + self._entry_size(key, text)
        if needed > self.quota_bytes:
            raise QuotaExceededError(needed, self.quota_bytes)

        self._data[key] = text
        return True
