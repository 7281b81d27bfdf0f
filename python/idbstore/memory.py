# -*- encoding: utf-8 -*-
"""
In-process storage engine with the IndexedDB event surface.

MemoryEngine provides:
- Versioned databases with upgrade transactions
- Object stores with key paths (dotted or compound) and key generators
- Unique and multi-entry indexes
- IndexedDB key ordering and the four cursor directions
- Rollback of aborted transactions
- Version-change notification of open connections and the blocked event

Differences from a browser engine:
- Requests run when issued and report on the next loop iteration
- A transaction stays active until ``commit()`` or ``abort()``; the
  ``Transaction`` context manager in idbstore.engine commits on exit
- An upgrade transaction stays active until the awaitable returned by the
  ``on_upgrade_needed`` handler settles

Usage:
    engine = MemoryEngine()
    conn = await Orchestrator(engine).open("app", version=2, migration=plan)
"""

from __future__ import annotations

import asyncio
import copy
import inspect
from bisect import bisect_left, bisect_right
from typing import Any, Callable, Optional

from . import ui_log
from .engine import BlockedEvent, TransactionMode, UpgradeEvent, dispatch
from .errors import IndexedDBRequestError, NotFoundError, request_error
from .keys import (
    Direction,
    KeyPath,
    KeyRange,
    coerce_range,
    evaluate_key_path,
    inject_key,
    normalize_key,
    sort_key,
)

_MAX_GENERATED_KEY = 2**53


def _invalid_state(message: str) -> IndexedDBRequestError:
    return request_error("InvalidStateError", message)


# =============================================================================
# STORED DATA
# =============================================================================


class _IndexSpec:
    def __init__(self, name: str, key_path: KeyPath, unique: bool, multi_entry: bool):
        self.name = name
        self.key_path = key_path
        self.unique = unique
        self.multi_entry = multi_entry

    def keys_for(self, value: Any) -> list:
        """Index keys a record contributes to this index."""
        key = evaluate_key_path(value, self.key_path)
        if key is None:
            return []
        if self.multi_entry and isinstance(key, list):
            found = {}
            for item in key:
                try:
                    found.setdefault(sort_key(item), normalize_key(item))
                except IndexedDBRequestError:
                    continue
            return list(found.values())
        try:
            sort_key(key)
        except IndexedDBRequestError:
            return []
        return [normalize_key(key)]


class _StoreData:
    def __init__(self, name: str, key_path: KeyPath, auto_increment: bool):
        self.name = name
        self.key_path = key_path
        self.auto_increment = auto_increment
        self.current_number = 1
        self.records: dict[tuple, tuple] = {}  # sort key -> (key, value)
        self.indexes: dict[str, _IndexSpec] = {}
        self.revision = 0
        # index name (None for the store) -> (revision, entries, positions)
        self._ordering: dict[Optional[str], tuple] = {}

    def clone(self) -> "_StoreData":
        other = _StoreData(self.name, self.key_path, self.auto_increment)
        other.current_number = self.current_number
        other.records = copy.deepcopy(self.records)
        other.indexes = dict(self.indexes)
        other.revision = self.revision + 1
        return other

    def restore(self, snapshot: "_StoreData") -> None:
        self.current_number = snapshot.current_number
        self.records = snapshot.records
        self.indexes = snapshot.indexes
        self.revision += 1

    def touch(self) -> None:
        self.revision += 1

    def ordered(self, spec: Optional[_IndexSpec] = None) -> tuple[list, list]:
        """
        Entries of the store (or of index ``spec``) in cursor order, with
        their ``(key sort, primary sort)`` positions for bisecting.

        Rebuilt only after a write, so a cursor walk sorts once.
        """
        name = spec.name if spec is not None else None
        cached = self._ordering.get(name)
        if cached is None or cached[0] != self.revision:
            entries = _build_entries(self.records, spec)
            cached = (self.revision, entries, [(entry[0], entry[1]) for entry in entries])
            self._ordering[name] = cached
        return cached[1], cached[2]


def _build_entries(records: dict, spec: Optional[_IndexSpec]) -> list:
    """(key sort, primary sort, key, primary key, value) tuples in cursor order."""
    if spec is None:
        return [(ks, ks, key, key, value) for ks, (key, value) in sorted(records.items())]
    entries = []
    for pksort, (primary_key, value) in records.items():
        for key in spec.keys_for(value):
            entries.append((sort_key(key), pksort, key, primary_key, value))
    entries.sort(key=lambda entry: (entry[0], entry[1]))
    return entries


class _DatabaseData:
    def __init__(self, name: str):
        self.name = name
        self.version = 0
        self.stores: dict[str, _StoreData] = {}
        self.connections: list[MemoryDatabase] = []
        self.lock = asyncio.Lock()
        self.closed = asyncio.Event()
        self.closed.set()

    def snapshot(self) -> tuple:
        return self.version, {name: store.clone() for name, store in self.stores.items()}

    def restore(self, snapshot: tuple) -> None:
        self.version, self.stores = snapshot

    def attach(self, connection: "MemoryDatabase") -> None:
        self.connections.append(connection)
        self.closed.clear()

    def detach(self, connection: "MemoryDatabase") -> None:
        if connection in self.connections:
            self.connections.remove(connection)
        if not self.connections:
            self.closed.set()


# =============================================================================
# REQUESTS
# =============================================================================


class MemoryRequest:
    """One-shot request; cursor requests fire once per cursor step."""

    def __init__(self, source: Any = None, transaction: Optional["MemoryTransaction"] = None):
        self.source = source
        self.transaction = transaction
        self.result = None
        self.error = None
        self.ready_state = "pending"
        self.on_success = None
        self.on_error = None

    def _succeed(self, result: Any) -> None:
        self.ready_state = "done"
        self.result = result
        self.error = None
        dispatch(self.on_success, self)

    def _fail(self, error: IndexedDBRequestError) -> None:
        self.ready_state = "done"
        self.result = None
        self.error = error
        dispatch(self.on_error, self)


class MemoryOpenRequest(MemoryRequest):
    def __init__(self):
        super().__init__()
        self.on_upgrade_needed = None
        self.on_blocked = None


# =============================================================================
# TRANSACTIONS
# =============================================================================


class MemoryTransaction:
    """
    Transaction over a set of object stores.

    Requests run against live data when issued; read-write and version-change
    transactions keep a snapshot of every store they touch so ``abort``
    restores it.
    """

    def __init__(self, db: "MemoryDatabase", store_names: list[str], mode: TransactionMode):
        self.db = db
        self.mode = mode
        self.object_store_names = sorted(store_names)
        self.error = None
        self.on_complete = None
        self.on_error = None
        self.on_abort = None
        self._pending = 0
        self._state = "active"
        self._snapshots: dict[str, _StoreData] = {}
        self._finish_callbacks: list[Callable[["MemoryTransaction"], None]] = []

    @property
    def active(self) -> bool:
        return self._state == "active"

    @property
    def finished(self) -> bool:
        return self._state in ("committed", "aborted")

    @property
    def aborted(self) -> bool:
        return self._state == "aborted"

    def object_store(self, name: str) -> "MemoryObjectStore":
        if self.finished:
            raise _invalid_state("The transaction has finished")
        if name not in self.object_store_names or name not in self.db._data.stores:
            raise NotFoundError(f"Object store '{name}' is not in the transaction scope")
        return MemoryObjectStore(self, self.db._data.stores[name])

    def commit(self) -> None:
        if self._state != "active":
            raise _invalid_state("The transaction is not active")
        self._state = "committing"
        self._maybe_finish()

    def abort(self, error: Optional[IndexedDBRequestError] = None) -> None:
        if self.finished:
            raise _invalid_state("The transaction has already finished")
        self._state = "aborted"
        self.error = error
        for name, snapshot in self._snapshots.items():
            store = self.db._data.stores.get(name)
            if store is not None:
                store.restore(snapshot)
        self._snapshots.clear()
        asyncio.get_running_loop().call_soon(self._fire_abort)

    def _fire_abort(self) -> None:
        dispatch(self.on_abort, self)
        self._run_finish_callbacks()

    def _maybe_finish(self) -> None:
        if self._state == "committing" and self._pending == 0:
            self._state = "committed"
            self._snapshots.clear()
            asyncio.get_running_loop().call_soon(self._fire_complete)

    def _fire_complete(self) -> None:
        dispatch(self.on_complete, self)
        self._run_finish_callbacks()

    def _run_finish_callbacks(self) -> None:
        callbacks, self._finish_callbacks = self._finish_callbacks, []
        for callback in callbacks:
            callback(self)

    def _when_finished(self, callback: Callable[["MemoryTransaction"], None]) -> None:
        self._finish_callbacks.append(callback)

    def _ensure_active(self) -> None:
        if self._state != "active":
            raise request_error(
                "TransactionInactiveError", "The transaction is not active"
            )

    def _ensure_writable(self, store: _StoreData) -> None:
        if self.mode == TransactionMode.READONLY:
            raise request_error("ReadOnlyError", "The transaction is read-only")
        if self.mode == TransactionMode.READWRITE and store.name not in self._snapshots:
            self._snapshots[store.name] = store.clone()

    def _issue(self, source: Any, operation: Callable[[], Any]) -> MemoryRequest:
        """Run ``operation`` now and report its outcome on the next tick."""
        self._ensure_active()
        request = MemoryRequest(source, self)
        self._pending += 1
        try:
            result, error = operation(), None
        except IndexedDBRequestError as ex:
            result, error = None, ex
        asyncio.get_running_loop().call_soon(self._settle, request, result, error)
        return request

    def _settle(self, request: MemoryRequest, result: Any, error: Any) -> None:
        self._pending -= 1
        if self._state == "aborted":
            request._fail(request_error("AbortError", "The transaction was aborted"))
            return
        if error is not None:
            request._fail(error)
            if not self.finished:
                self.error = error
                dispatch(self.on_error, self)
                self.abort(error)
            return
        request._succeed(result)
        self._maybe_finish()


# =============================================================================
# CURSORS
# =============================================================================


class MemoryCursor:
    """Cursor positioned on one entry of a store or index."""

    def __init__(self, request: MemoryRequest, source: Any, key_range: Optional[KeyRange], direction: Direction):
        self.request = request
        self.source = source
        self.direction = direction
        self._range = key_range
        self._position: Optional[tuple] = None
        self._got_value = False
        self.key = None
        self.primary_key = None
        self.value = None

    def continue_(self, key: Any = None) -> None:
        if not self._got_value:
            raise _invalid_state("The cursor is not positioned or is already advancing")
        if key is not None:
            target = sort_key(key)
            if self._position is not None:
                current = self._position[0]
                if (target <= current) if not self.direction.descending else (target >= current):
                    raise request_error("DataError", "continue key is not past the cursor position")
        self._got_value = False
        self.source._step(self, key)

    def advance(self, count: int) -> None:
        if count <= 0:
            raise TypeError("advance count must be positive")
        if not self._got_value:
            raise _invalid_state("The cursor is not positioned or is already advancing")
        self._got_value = False
        self.source._step(self, None, count)

    def delete(self) -> MemoryRequest:
        store = self.source._store_handle()
        return store.delete(self.primary_key)

    def update(self, value: Any) -> MemoryRequest:
        store = self.source._store_handle()
        if store.key_path is not None:
            return store.put(value)
        return store.put(value, self.primary_key)

    def _land(self, entry: Optional[tuple]) -> None:
        if entry is None:
            self._position = None
            self.request._succeed(None)
            return
        ksort, pksort, key, primary_key, value = entry
        self._position = (ksort, pksort)
        self.key = copy.deepcopy(key)
        self.primary_key = copy.deepcopy(primary_key)
        self.value = copy.deepcopy(value)
        self._got_value = True
        self.request._succeed(self)


# positions are (key sort, primary sort); these sort before and after every
# primary sort sharing a key sort
_FIRST = ()
_LAST = (99,)


def _window(positions: list, key_range: Optional[KeyRange]) -> tuple[int, int]:
    """Slice bounds of the entries whose key lies in ``key_range``."""
    lo, hi = 0, len(positions)
    if key_range is None:
        return lo, hi
    if key_range.lower is not None:
        lower = sort_key(key_range.lower)
        if key_range.lower_open:
            lo = bisect_right(positions, (lower, _LAST))
        else:
            lo = bisect_left(positions, (lower, _FIRST))
    if key_range.upper is not None:
        upper = sort_key(key_range.upper)
        if key_range.upper_open:
            hi = bisect_left(positions, (upper, _FIRST))
        else:
            hi = bisect_right(positions, (upper, _LAST))
    return lo, max(lo, hi)


def _next_entry(
    entries: list,
    positions: list,
    bounds: tuple[int, int],
    position: Optional[tuple],
    direction: Direction,
    target: Optional[tuple],
) -> Optional[tuple]:
    """Pick the entry after ``position`` for ``direction`` within ``bounds``."""
    lo, hi = bounds
    if not direction.descending:
        if position is None:
            idx = lo
        elif direction.unique:
            idx = bisect_right(positions, (position[0], _LAST), lo, hi)
        else:
            idx = bisect_right(positions, position, lo, hi)
        if target is not None:
            idx = max(idx, bisect_left(positions, (target, _FIRST), lo, hi))
        return entries[idx] if idx < hi else None

    if position is None:
        idx = hi - 1
    elif direction.unique:
        idx = bisect_left(positions, (position[0], _FIRST), lo, hi) - 1
    else:
        idx = bisect_left(positions, position, lo, hi) - 1
    if target is not None:
        idx = min(idx, bisect_right(positions, (target, _LAST), lo, hi) - 1)
    if idx < lo:
        return None
    if direction.unique:
        # prevunique yields the lowest primary key of each index key
        first = bisect_left(positions, (entries[idx][0], _FIRST), lo, hi)
        return entries[first]
    return entries[idx]


class _CursorSource:
    """Shared cursor and count logic of stores and indexes."""

    transaction: MemoryTransaction

    def _ordered(self) -> tuple[list, list]:
        raise NotImplementedError

    def _store_handle(self) -> "MemoryObjectStore":
        raise NotImplementedError

    def _entries(self, key_range: Optional[KeyRange]) -> list:
        entries, positions = self._ordered()
        lo, hi = _window(positions, key_range)
        return entries[lo:hi]

    def open_cursor(self, query: Any = None, direction: Any = "next") -> MemoryRequest:
        key_range = coerce_range(query)
        direction = Direction.coerce(direction)
        self.transaction._ensure_active()
        request = MemoryRequest(self, self.transaction)
        cursor = MemoryCursor(request, self, key_range, direction)
        self._step(cursor, None)
        return request

    def open_key_cursor(self, query: Any = None, direction: Any = "next") -> MemoryRequest:
        return self.open_cursor(query, direction)

    def _step(self, cursor: MemoryCursor, key: Any, count: int = 1) -> None:
        tx = self.transaction
        tx._ensure_active()
        target = sort_key(key) if key is not None else None
        tx._pending += 1

        def run():
            tx._pending -= 1
            if tx.aborted:
                cursor.request._fail(request_error("AbortError", "The transaction was aborted"))
                return
            entries, positions = self._ordered()
            bounds = _window(positions, cursor._range)
            position = cursor._position
            entry = None
            for _ in range(count):
                entry = _next_entry(entries, positions, bounds, position, cursor.direction, target)
                if entry is None:
                    break
                position = (entry[0], entry[1])
            cursor._land(entry)
            tx._maybe_finish()

        asyncio.get_running_loop().call_soon(run)

    def count(self, query: Any = None) -> MemoryRequest:
        key_range = coerce_range(query)
        return self.transaction._issue(self, lambda: len(self._entries(key_range)))

    def get(self, query: Any) -> MemoryRequest:
        key_range = coerce_range(query)
        if key_range is None:
            raise request_error("DataError", "get() requires a key or key range")

        def run():
            entries = self._entries(key_range)
            return copy.deepcopy(entries[0][4]) if entries else None

        return self.transaction._issue(self, run)

    def get_all(self, query: Any = None, count: Optional[int] = None) -> MemoryRequest:
        key_range = coerce_range(query)

        def run():
            entries = self._entries(key_range)
            if count:
                entries = entries[:count]
            return [copy.deepcopy(entry[4]) for entry in entries]

        return self.transaction._issue(self, run)


# =============================================================================
# OBJECT STORES AND INDEXES
# =============================================================================


class MemoryIndex(_CursorSource):
    def __init__(self, store: "MemoryObjectStore", spec: _IndexSpec):
        self.object_store = store
        self.transaction = store.transaction
        self._spec = spec

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def key_path(self) -> KeyPath:
        return self._spec.key_path

    @property
    def unique(self) -> bool:
        return self._spec.unique

    @property
    def multi_entry(self) -> bool:
        return self._spec.multi_entry

    def _store_handle(self) -> "MemoryObjectStore":
        return self.object_store

    def _ordered(self) -> tuple[list, list]:
        return self.object_store._data.ordered(self._spec)


class MemoryObjectStore(_CursorSource):
    def __init__(self, transaction: MemoryTransaction, data: _StoreData):
        self.transaction = transaction
        self._data = data

    @property
    def name(self) -> str:
        return self._data.name

    @property
    def key_path(self) -> KeyPath:
        return self._data.key_path

    @property
    def auto_increment(self) -> bool:
        return self._data.auto_increment

    @property
    def index_names(self) -> list[str]:
        return sorted(self._data.indexes)

    def _store_handle(self) -> "MemoryObjectStore":
        return self

    def _ordered(self) -> tuple[list, list]:
        return self._data.ordered()

    def index(self, name: str) -> MemoryIndex:
        if self.transaction.finished:
            raise _invalid_state("The transaction has finished")
        spec = self._data.indexes.get(name)
        if spec is None:
            raise NotFoundError(f"Index '{name}' does not exist on object store '{self.name}'")
        return MemoryIndex(self, spec)

    # Schema operations (version-change transactions only)
    def create_index(
        self,
        name: str,
        key_path: KeyPath,
        unique: bool = False,
        multi_entry: bool = False,
    ) -> MemoryIndex:
        self._ensure_versionchange()
        if name in self._data.indexes:
            raise request_error("ConstraintError", f"Index '{name}' already exists on '{self.name}'")
        if multi_entry and not isinstance(key_path, str):
            raise request_error("InvalidAccessError", "multi_entry indexes need a single key path")
        spec = _IndexSpec(name, key_path, unique, multi_entry)
        if unique:
            seen = set()
            for _, value in self._data.records.values():
                for key in spec.keys_for(value):
                    if sort_key(key) in seen:
                        raise request_error(
                            "ConstraintError",
                            f"Existing records violate unique index '{name}'",
                        )
                    seen.add(sort_key(key))
        self._data.indexes[name] = spec
        self._data.touch()
        return MemoryIndex(self, spec)

    def delete_index(self, name: str) -> None:
        self._ensure_versionchange()
        if name not in self._data.indexes:
            raise NotFoundError(f"Index '{name}' does not exist on object store '{self.name}'")
        del self._data.indexes[name]
        self._data.touch()

    def _ensure_versionchange(self) -> None:
        if self.transaction.mode != TransactionMode.VERSIONCHANGE:
            raise _invalid_state("Schema changes need a version-change transaction")
        self.transaction._ensure_active()

    # Record operations
    def add(self, value: Any, key: Any = None) -> MemoryRequest:
        return self._write(value, key, overwrite=False)

    def put(self, value: Any, key: Any = None) -> MemoryRequest:
        return self._write(value, key, overwrite=True)

    def _write(self, value: Any, key: Any, overwrite: bool) -> MemoryRequest:
        tx = self.transaction
        tx._ensure_active()
        tx._ensure_writable(self._data)
        data = self._data
        value = copy.deepcopy(value)

        if data.key_path is not None and key is not None:
            raise request_error("DataError", "A key was provided for a store with a key path")
        if data.key_path is not None:
            key = evaluate_key_path(value, data.key_path)
            if key is None and not (data.auto_increment and isinstance(data.key_path, str)):
                raise request_error("DataError", f"Value has no key at key path {data.key_path!r}")
        elif key is None and not data.auto_increment:
            raise request_error("DataError", "No key provided for a store without a key generator")
        if key is not None:
            sort_key(key)

        def run():
            nonlocal key
            if key is None:
                if data.current_number > _MAX_GENERATED_KEY:
                    raise request_error("ConstraintError", "Key generator exhausted")
                key = data.current_number
                data.current_number += 1
                if data.key_path is not None:
                    inject_key(value, data.key_path, key)
            elif data.auto_increment and isinstance(key, (int, float)) and key >= data.current_number:
                data.current_number = int(key) + 1
            key = normalize_key(key)
            ksort = sort_key(key)
            if not overwrite and ksort in data.records:
                raise request_error(
                    "ConstraintError", f"Key {key!r} already exists in '{data.name}'"
                )
            self._check_unique(ksort, value)
            data.records[ksort] = (key, value)
            data.touch()
            return copy.deepcopy(key)

        return tx._issue(self, run)

    def _check_unique(self, ksort: tuple, value: Any) -> None:
        for spec in self._data.indexes.values():
            if not spec.unique:
                continue
            wanted = {sort_key(key) for key in spec.keys_for(value)}
            if not wanted:
                continue
            for other, (_, other_value) in self._data.records.items():
                if other == ksort:
                    continue
                for key in spec.keys_for(other_value):
                    if sort_key(key) in wanted:
                        raise request_error(
                            "ConstraintError",
                            f"Unique index '{spec.name}' already has key {key!r}",
                        )

    def delete(self, query: Any) -> MemoryRequest:
        tx = self.transaction
        tx._ensure_active()
        tx._ensure_writable(self._data)
        key_range = coerce_range(query)
        if key_range is None:
            raise request_error("DataError", "delete() requires a key or key range")

        def run():
            doomed = [ks for ks, (key, _) in self._data.records.items() if key_range.includes(key)]
            for ks in doomed:
                del self._data.records[ks]
            if doomed:
                self._data.touch()
            return None

        return tx._issue(self, run)

    def clear(self) -> MemoryRequest:
        tx = self.transaction
        tx._ensure_active()
        tx._ensure_writable(self._data)

        def run():
            self._data.records.clear()
            self._data.touch()
            return None

        return tx._issue(self, run)


# =============================================================================
# CONNECTIONS
# =============================================================================


class MemoryDatabase:
    """Connection handle to one database of a MemoryEngine."""

    def __init__(self, engine: "MemoryEngine", data: _DatabaseData, version: int):
        self._engine = engine
        self._data = data
        self.name = data.name
        self.version = version
        self.closed = False
        self.on_version_change = None
        self.on_close = None
        self._upgrade: Optional[MemoryTransaction] = None

    @property
    def object_store_names(self) -> list[str]:
        return sorted(self._data.stores)

    def transaction(self, store_names: Any, mode: str = "readonly") -> MemoryTransaction:
        if self.closed:
            raise _invalid_state(f"Database '{self.name}' connection is closed")
        if self._upgrade is not None and not self._upgrade.finished:
            raise _invalid_state("A version-change transaction is running")
        if isinstance(store_names, str):
            store_names = [store_names]
        store_names = list(store_names)
        if not store_names:
            raise request_error("InvalidAccessError", "A transaction needs at least one store")
        for name in store_names:
            if name not in self._data.stores:
                raise NotFoundError(f"Object store '{name}' does not exist in '{self.name}'")
        mode = TransactionMode(mode)
        if mode == TransactionMode.VERSIONCHANGE:
            raise request_error("TypeError", "versionchange transactions come from open()")
        return MemoryTransaction(self, store_names, mode)

    def create_object_store(
        self, name: str, key_path: KeyPath = None, auto_increment: bool = False
    ) -> MemoryObjectStore:
        tx = self._ensure_upgrade()
        if name in self._data.stores:
            raise request_error("ConstraintError", f"Object store '{name}' already exists")
        if auto_increment and (key_path == "" or (key_path is not None and not isinstance(key_path, str))):
            raise request_error("InvalidAccessError", "auto_increment needs a single non-empty key path")
        self._data.stores[name] = _StoreData(name, key_path, auto_increment)
        tx.object_store_names = sorted(self._data.stores)
        return MemoryObjectStore(tx, self._data.stores[name])

    def delete_object_store(self, name: str) -> None:
        tx = self._ensure_upgrade()
        if name not in self._data.stores:
            raise NotFoundError(f"Object store '{name}' does not exist in '{self.name}'")
        del self._data.stores[name]
        tx.object_store_names = sorted(self._data.stores)

    def _ensure_upgrade(self) -> MemoryTransaction:
        if self._upgrade is None or not self._upgrade.active:
            raise _invalid_state("Schema changes need an active version-change transaction")
        return self._upgrade

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._data.detach(self)


class MemoryEngine:
    """
    In-process storage engine.

    Databases live as long as the engine instance; there is no module-level
    state, so every engine is an isolated namespace.
    """

    def __init__(self):
        self._databases: dict[str, _DatabaseData] = {}

    def database_names(self) -> list[str]:
        return sorted(name for name, data in self._databases.items() if data.version > 0)

    def open(self, name: str, version: Optional[int] = None) -> MemoryOpenRequest:
        if version is not None and (
            isinstance(version, bool) or not isinstance(version, int) or version < 1
        ):
            raise TypeError(f"Database version must be a positive integer, got {version!r}")
        request = MemoryOpenRequest()
        data = self._databases.setdefault(name, _DatabaseData(name))
        asyncio.ensure_future(self._run_open(request, data, version))
        return request

    def delete_database(self, name: str) -> MemoryRequest:
        request = MemoryRequest()
        asyncio.ensure_future(self._run_delete(request, name))
        return request

    async def _wait_for_others(self, request: MemoryRequest, data: _DatabaseData, new_version: Optional[int]) -> None:
        if not data.connections:
            return
        for connection in list(data.connections):
            dispatch(connection.on_version_change, BlockedEvent(data.version, new_version))
        await asyncio.sleep(0)
        if data.connections:
            ui_log.warn(
                f"Database '{data.name}' upgrade blocked by {len(data.connections)} open connection(s)"
            )
            dispatch(getattr(request, "on_blocked", None), BlockedEvent(data.version, new_version))
            await data.closed.wait()

    async def _run_open(self, request: MemoryOpenRequest, data: _DatabaseData, version: Optional[int]) -> None:
        async with data.lock:
            if version is None:
                version = max(data.version, 1)
            if version < data.version:
                request._fail(
                    request_error(
                        "VersionError",
                        f"Requested version ({version}) is less than the existing version ({data.version})",
                    )
                )
                self._forget_if_empty(data)
                return
            if version == data.version:
                connection = MemoryDatabase(self, data, version)
                data.attach(connection)
                request._succeed(connection)
                return

            await self._wait_for_others(request, data, version)
            await self._upgrade(request, data, version)

    async def _upgrade(self, request: MemoryOpenRequest, data: _DatabaseData, version: int) -> None:
        old_version = data.version
        snapshot = data.snapshot()
        data.version = version
        connection = MemoryDatabase(self, data, version)
        tx = MemoryTransaction(connection, list(data.stores), TransactionMode.VERSIONCHANGE)
        connection._upgrade = tx
        request.result = connection
        request.transaction = tx

        loop = asyncio.get_running_loop()
        finished = loop.create_future()
        tx._when_finished(lambda _tx: finished.done() or finished.set_result(True))

        try:
            outcome = None
            if request.on_upgrade_needed is not None:
                outcome = request.on_upgrade_needed(
                    UpgradeEvent(old_version, version, connection, tx)
                )
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as ex:
            ui_log.fail(f"Upgrade of '{data.name}' to version {version} failed: {ex}")
            if not tx.finished:
                tx.abort(request_error("AbortError", str(ex)))

        if not tx.finished and tx.active:
            tx.commit()
        await finished
        request.transaction = None
        connection._upgrade = None

        if tx.aborted:
            data.restore(snapshot)
            connection.closed = True
            self._forget_if_empty(data)
            request._fail(
                request_error("AbortError", f"Version change transaction of '{data.name}' was aborted")
            )
            return
        data.attach(connection)
        request._succeed(connection)

    async def _run_delete(self, request: MemoryRequest, name: str) -> None:
        data = self._databases.get(name)
        if data is None:
            request._succeed(None)
            return
        async with data.lock:
            await self._wait_for_others(request, data, None)
            if self._databases.get(name) is data:
                del self._databases[name]
            request._succeed(None)

    def _forget_if_empty(self, data: _DatabaseData) -> None:
        if data.version == 0 and not data.connections and self._databases.get(data.name) is data:
            del self._databases[data.name]
