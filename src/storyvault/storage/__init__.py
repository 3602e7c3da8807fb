"""Storage backends for storyvault.

The transactional object store (in memory or SQLite) holds save slots; the
synchronous key-value stores hold settings, story metadata, session
snapshots and pre-migration saves.
"""

from storyvault.storage.legacy import (
    JsonFileKeyValueStore,
    KeyValueStore,
    LegacySaveSlots,
    MemoryKeyValueStore,
    read_layout_b,
)
from storyvault.storage.object_store import (
    Database,
    MemoryObjectStore,
    ObjectStoreBackend,
    Request,
    Transaction,
    TransactionMode,
)
from storyvault.storage.session_store import MemorySessionStore
from storyvault.storage.sqlite_store import SQLiteObjectStore

__all__ = [
    "Database",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "LegacySaveSlots",
    "MemoryKeyValueStore",
    "MemoryObjectStore",
    "MemorySessionStore",
    "ObjectStoreBackend",
    "Request",
    "SQLiteObjectStore",
    "Transaction",
    "TransactionMode",
    "read_layout_b",
]
