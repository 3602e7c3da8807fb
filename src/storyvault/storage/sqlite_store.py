"""
SQLite-backed object store.

Each database is one SQLite file. Every object store is a table of
``(key, value)`` rows where ``value`` is the msgpack encoding of the stored
dict; a bookkeeping table remembers each store's key path and the schema
version lives in ``PRAGMA user_version``.

Transactions run in a worker thread (``asyncio.to_thread``) inside
``BEGIN IMMEDIATE ... COMMIT``; any failure rolls the whole transaction back.

File Layout:
===========
    <directory>/
    └── <database name>.sqlite3
        ├── __object_stores__ (name TEXT PRIMARY KEY, key_path TEXT)
        ├── "os_saves"        (key BLOB PRIMARY KEY, value BLOB)
        └── "os_details"      (key BLOB PRIMARY KEY, value BLOB)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

import msgpack

from storyvault.core.errors import BackendUnavailableError, ConstraintError
from storyvault.storage.object_store import (
    Database,
    ObjectStoreBackend,
    Operation,
    OperationKind,
    Transaction,
    TransactionMode,
    UpgradeCallback,
)

logger = logging.getLogger(__name__)

_CATALOG = "__object_stores__"


def _pack(value: Any) -> bytes:
    return msgpack.packb(value, use_bin_type=True)


def _unpack(data: bytes) -> Any:
    return msgpack.unpackb(data, raw=False, strict_map_key=False)


def _table(name: str) -> str:
    # store names are quoted identifiers; double any embedded quotes
    return '"os_' + name.replace('"', '""') + '"'


class SQLiteDatabase(Database):
    """Connection to one SQLite database file."""

    def __init__(self, name: str, version: int, connection: sqlite3.Connection):
        super().__init__(name, version)
        self._conn = connection
        self._lock = threading.Lock()
        self._key_paths: dict[str, str] = dict(
            connection.execute(f"SELECT name, key_path FROM {_CATALOG}").fetchall()
        )

    @property
    def object_store_names(self) -> list[str]:
        return sorted(self._key_paths)

    def key_path(self, name: str) -> str:
        return self._key_paths[name]

    def _create_object_store(self, name: str, key_path: str) -> None:
        with self._lock:
            self._conn.execute(f"CREATE TABLE {_table(name)} (key BLOB PRIMARY KEY, value BLOB NOT NULL)")
            self._conn.execute(
                f"INSERT INTO {_CATALOG} (name, key_path) VALUES (?, ?)", (name, key_path)
            )
        self._key_paths[name] = key_path

    def _apply(self, operation: Operation) -> None:
        table = _table(operation.store)
        kind = operation.kind
        cursor = self._conn
        if kind is OperationKind.GET:
            row = cursor.execute(f"SELECT value FROM {table} WHERE key = ?", (operation.key,)).fetchone()
            operation.request._resolve(_unpack(row[0]) if row else None)
        elif kind is OperationKind.GET_ALL:
            rows = cursor.execute(f"SELECT value FROM {table} ORDER BY key").fetchall()
            operation.request._resolve([_unpack(row[0]) for row in rows])
        elif kind is OperationKind.ADD:
            try:
                cursor.execute(
                    f"INSERT INTO {table} (key, value) VALUES (?, ?)",
                    (operation.key, _pack(operation.value)),
                )
            except sqlite3.IntegrityError as e:
                raise ConstraintError(
                    f"Key {operation.key!r} already exists in object store '{operation.store}'"
                ) from e
            operation.request._resolve(operation.key)
        elif kind is OperationKind.DELETE:
            cursor.execute(f"DELETE FROM {table} WHERE key = ?", (operation.key,))
            operation.request._resolve(None)
        elif kind is OperationKind.CLEAR:
            cursor.execute(f"DELETE FROM {table}")
            operation.request._resolve(None)
        else:
            raise ValueError(f"Unknown operation: {kind}")

    def _run_sync(self, transaction: Transaction) -> None:
        with self._lock:
            begin = "BEGIN IMMEDIATE" if transaction.mode is TransactionMode.READWRITE else "BEGIN"
            self._conn.execute(begin)
            try:
                for operation in transaction.operations:
                    self._apply(operation)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    async def _run(self, transaction: Transaction) -> None:
        await asyncio.to_thread(self._run_sync, transaction)

    def close(self) -> None:
        if not self.closed:
            with self._lock:
                self._conn.close()
        super().close()


class SQLiteObjectStore(ObjectStoreBackend):
    """Object store persisting each database to ``<directory>/<name>.sqlite3``."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.sqlite3"

    def _connect(self, name: str) -> tuple[sqlite3.Connection, int]:
        self.directory.mkdir(parents=True, exist_ok=True)
        # autocommit mode; transactions are managed explicitly
        conn = sqlite3.connect(self.path_for(name), isolation_level=None, check_same_thread=False)
        conn.execute(f"CREATE TABLE IF NOT EXISTS {_CATALOG} (name TEXT PRIMARY KEY, key_path TEXT NOT NULL)")
        stored_version = conn.execute("PRAGMA user_version").fetchone()[0]
        return conn, stored_version

    async def open(self, name: str, version: int, upgrade: UpgradeCallback | None = None) -> SQLiteDatabase:
        try:
            conn, stored_version = await asyncio.to_thread(self._connect, name)
        except (OSError, sqlite3.Error) as e:
            raise BackendUnavailableError(f"Can't open database '{name}': {e}") from e

        if version < stored_version:
            conn.close()
            raise BackendUnavailableError(
                f"Requested version {version} of '{name}' is older than stored version {stored_version}"
            )

        db = SQLiteDatabase(name, stored_version, conn)
        if version > stored_version:
            logger.info(f"Upgrading database '{name}' from version {stored_version} to {version}")
            conn.execute("BEGIN IMMEDIATE")
            db._upgrading = True
            try:
                if upgrade is not None:
                    upgrade(db, stored_version)
                # PRAGMA does not accept bound parameters
                conn.execute(f"PRAGMA user_version = {int(version)}")
            except Exception as e:
                conn.execute("ROLLBACK")
                conn.close()
                raise BackendUnavailableError(f"Upgrade of '{name}' to version {version} failed: {e}") from e
            finally:
                db._upgrading = False
            conn.execute("COMMIT")
            db.version = version
        return db
