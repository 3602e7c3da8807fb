"""
Asynchronous transactional object store.

A small, versioned, multi-table store modelled on the browser object store
the save system was designed around. Tables ("object stores") hold
structured values keyed by one of their fields. All reads and writes happen
inside a transaction spanning a fixed set of tables; requests queued on a
transaction receive their results when the transaction completes, and a
transaction either commits every write or none of them.

Usage:
======

    db = await backend.open("saves-db", 1, upgrade)

    tx = db.transaction(["saves", "details"], TransactionMode.READWRITE)
    tx.object_store("saves").delete(3)
    tx.object_store("saves").add({"slot": 3, "data": payload})
    await tx.complete()           # raises TransactionAbortedError on failure

    tx = db.transaction(["saves"], TransactionMode.READONLY)
    request = tx.object_store("saves").get(3)
    await tx.complete()
    record = request.result

Schema Upgrades:
===============
``open(name, version, upgrade)`` calls ``upgrade(db, old_version)`` when the
stored version is lower than ``version`` (0 for a new database). Only inside
the upgrade callback may ``db.create_object_store(name, key_path)`` be used.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from storyvault.core.errors import (
    BackendUnavailableError,
    ConstraintError,
    StructuralError,
    TransactionAbortedError,
)

logger = logging.getLogger(__name__)

UpgradeCallback = Callable[["Database", int], None]


class TransactionMode(str, Enum):
    """Transaction access modes."""
    READONLY = "readonly"
    READWRITE = "readwrite"


class OperationKind(str, Enum):
    GET = "get"
    GET_ALL = "get_all"
    ADD = "add"
    DELETE = "delete"
    CLEAR = "clear"


WRITE_OPERATIONS = frozenset({OperationKind.ADD, OperationKind.DELETE, OperationKind.CLEAR})


class Request:
    """Pending result of one operation; filled in when its transaction completes."""

    def __init__(self) -> None:
        self.result: Any = None
        self.error: BaseException | None = None
        self.done = False

    def _resolve(self, result: Any) -> None:
        self.result = result
        self.done = True

    def _reject(self, error: BaseException) -> None:
        self.error = error
        self.done = True


@dataclass
class Operation:
    """One queued operation of a transaction."""
    store: str
    kind: OperationKind
    key: Any = None
    value: Any = None
    request: Request = field(default_factory=Request)


class ObjectStore:
    """Table handle scoped to a transaction. Methods queue operations and return Requests."""

    def __init__(self, transaction: Transaction, name: str, key_path: str):
        self._transaction = transaction
        self.name = name
        self.key_path = key_path

    def _queue(self, kind: OperationKind, key: Any = None, value: Any = None) -> Request:
        return self._transaction._queue(Operation(self.name, kind, key, value))

    def _key_of(self, value: Any) -> Any:
        if not isinstance(value, dict) or self.key_path not in value:
            raise StructuralError(
                f"Value for object store '{self.name}' must be a dict with a '{self.key_path}' key"
            )
        return value[self.key_path]

    def get(self, key: Any) -> Request:
        return self._queue(OperationKind.GET, key=key)

    def get_all(self) -> Request:
        return self._queue(OperationKind.GET_ALL)

    def add(self, value: dict[str, Any]) -> Request:
        """Insert; the transaction aborts if the key already exists."""
        return self._queue(OperationKind.ADD, key=self._key_of(value), value=value)

    def delete(self, key: Any) -> Request:
        return self._queue(OperationKind.DELETE, key=key)

    def clear(self) -> Request:
        return self._queue(OperationKind.CLEAR)


class Transaction:
    """
    A unit of work over a fixed set of object stores.

    Operations are queued synchronously and executed atomically by
    ``complete()``.
    """

    def __init__(self, database: Database, names: list[str], mode: TransactionMode):
        self.database = database
        self.names = names
        self.mode = TransactionMode(mode)
        self.operations: list[Operation] = []
        self._aborted = False
        self._finished = False

    def object_store(self, name: str) -> ObjectStore:
        if name not in self.names:
            raise KeyError(f"Object store '{name}' is not in the scope of this transaction")
        return ObjectStore(self, name, self.database.key_path(name))

    def _queue(self, operation: Operation) -> Request:
        if self._finished:
            raise TransactionAbortedError("Transaction has already finished")
        if operation.kind in WRITE_OPERATIONS and self.mode is TransactionMode.READONLY:
            raise PermissionError(
                f"Can't {operation.kind.value} in a readonly transaction on '{operation.store}'"
            )
        self.operations.append(operation)
        return operation.request

    def abort(self) -> None:
        """Discard every queued operation; ``complete()`` will raise."""
        self._aborted = True

    async def complete(self) -> None:
        """
        Execute the queued operations atomically.

        Raises:
            TransactionAbortedError: the transaction was aborted or failed;
                no write is visible
        """
        if self._finished:
            return
        self._finished = True

        if self._aborted:
            error = TransactionAbortedError("Transaction was aborted", explicit=True)
            self._reject_all(error)
            raise error

        try:
            await self.database._execute(self)
        except TransactionAbortedError as e:
            self._reject_all(e)
            raise
        except Exception as e:
            error = TransactionAbortedError(f"Transaction failed: {e}")
            self._reject_all(error)
            raise error from e

    def _reject_all(self, error: BaseException) -> None:
        for operation in self.operations:
            operation.request._reject(error)


class Database(ABC):
    """An open connection to one named, versioned database."""

    def __init__(self, name: str, version: int):
        self.name = name
        self.version = version
        self.closed = False
        self._upgrading = False

    @property
    @abstractmethod
    def object_store_names(self) -> list[str]:
        ...

    @abstractmethod
    def key_path(self, name: str) -> str:
        ...

    @abstractmethod
    def _create_object_store(self, name: str, key_path: str) -> None:
        ...

    @abstractmethod
    async def _run(self, transaction: Transaction) -> None:
        """Apply the transaction's operations atomically, resolving each request."""
        ...

    def create_object_store(self, name: str, key_path: str) -> None:
        """Create a table; only valid inside an upgrade callback."""
        if not self._upgrading:
            raise RuntimeError("Object stores can only be created during a version upgrade")
        if name in self.object_store_names:
            raise ConstraintError(f"Object store '{name}' already exists")
        self._create_object_store(name, key_path)
        logger.debug(f"Created object store '{name}' (key path '{key_path}') in '{self.name}'")

    def transaction(self, names: str | Iterable[str], mode: TransactionMode | str = TransactionMode.READONLY) -> Transaction:
        if self.closed:
            raise BackendUnavailableError(f"Database '{self.name}' is closed")
        names = [names] if isinstance(names, str) else list(names)
        missing = [name for name in names if name not in self.object_store_names]
        if missing:
            raise KeyError(f"Unknown object stores: {missing}")
        return Transaction(self, names, TransactionMode(mode))

    async def _execute(self, transaction: Transaction) -> None:
        if self.closed:
            raise TransactionAbortedError(f"Database '{self.name}' was closed")
        await self._run(transaction)

    def close(self) -> None:
        self.closed = True


class ObjectStoreBackend(ABC):
    """Factory for database connections."""

    @abstractmethod
    async def open(self, name: str, version: int, upgrade: UpgradeCallback | None = None) -> Database:
        """
        Open (creating or upgrading) a database.

        Raises:
            BackendUnavailableError: the database can't be opened, or the
                requested version is older than the stored one
        """
        ...


def apply_operation(rows: dict[Any, Any], operation: Operation) -> None:
    """Apply one operation to a table's ``key -> value`` rows, resolving its request."""
    kind = operation.kind
    if kind is OperationKind.GET:
        value = rows.get(operation.key)
        operation.request._resolve(copy.deepcopy(value))
    elif kind is OperationKind.GET_ALL:
        operation.request._resolve([copy.deepcopy(rows[key]) for key in sorted(rows)])
    elif kind is OperationKind.ADD:
        if operation.key in rows:
            raise ConstraintError(
                f"Key {operation.key!r} already exists in object store '{operation.store}'"
            )
        rows[operation.key] = copy.deepcopy(operation.value)
        operation.request._resolve(operation.key)
    elif kind is OperationKind.DELETE:
        rows.pop(operation.key, None)
        operation.request._resolve(None)
    elif kind is OperationKind.CLEAR:
        rows.clear()
        operation.request._resolve(None)
    else:
        raise ValueError(f"Unknown operation: {kind}")


@dataclass
class _MemoryTable:
    key_path: str
    rows: dict[Any, Any] = field(default_factory=dict)


@dataclass
class _MemoryDatabaseState:
    version: int = 0
    tables: dict[str, _MemoryTable] = field(default_factory=dict)


class MemoryDatabase(Database):
    """Connection to a database held by a MemoryObjectStore."""

    def __init__(self, name: str, state: _MemoryDatabaseState):
        super().__init__(name, state.version)
        self._state = state

    @property
    def object_store_names(self) -> list[str]:
        return sorted(self._state.tables)

    def key_path(self, name: str) -> str:
        return self._state.tables[name].key_path

    def _create_object_store(self, name: str, key_path: str) -> None:
        self._state.tables[name] = _MemoryTable(key_path)

    def rows(self, name: str) -> dict[Any, Any]:
        """Committed rows of a table (for inspection)."""
        return self._state.tables[name].rows

    async def _run(self, transaction: Transaction) -> None:
        # completion is always delivered asynchronously
        await asyncio.sleep(0)

        if transaction.mode is TransactionMode.READONLY:
            for operation in transaction.operations:
                apply_operation(self._state.tables[operation.store].rows, operation)
            return

        # work on copies; swap them in only if every operation succeeds
        staged = {name: dict(self._state.tables[name].rows) for name in transaction.names}
        for operation in transaction.operations:
            apply_operation(staged[operation.store], operation)
        for name, rows in staged.items():
            self._state.tables[name].rows = rows


class MemoryObjectStore(ObjectStoreBackend):
    """
    Object store kept in process memory.

    Databases outlive their connections, so reopening by name sees earlier
    commits. Values are deep-copied on the way in and out.
    """

    def __init__(self) -> None:
        self._databases: dict[str, _MemoryDatabaseState] = {}

    async def open(self, name: str, version: int, upgrade: UpgradeCallback | None = None) -> MemoryDatabase:
        await asyncio.sleep(0)
        state = self._databases.setdefault(name, _MemoryDatabaseState())
        if version < state.version:
            raise BackendUnavailableError(
                f"Requested version {version} of '{name}' is older than stored version {state.version}"
            )

        db = MemoryDatabase(name, state)
        if version > state.version:
            old_version = state.version
            logger.info(f"Upgrading memory database '{name}' from version {old_version} to {version}")
            db._upgrading = True
            try:
                if upgrade is not None:
                    upgrade(db, old_version)
            finally:
                db._upgrading = False
            state.version = version
            db.version = version
        return db
