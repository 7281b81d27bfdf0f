# -*- encoding: utf-8 -*-
"""
Connection facade: CRUD and queries over one open database handle.

A Connection is handed out by the orchestrator once the open (and any
migration) has finished. Every method opens its own transaction; the bulk
writers put all their writes in one read-write transaction.

Usage:
    conn = await open("app", version=2, migration=plan, engine=MemoryEngine())
    key = await conn.insert("users", {"name": "Alex"})
    rows = await conn.get("users", "sort_name", limit=4, offset=1)
    conn.close()
"""

from __future__ import annotations

from functools import partial
from typing import Any, Mapping, Optional, Union

from . import query, tasks, ui_log
from .engine import Transaction, TransactionMode, await_request, walk_cursor
from .errors import DatabaseNotOpenError
from .keys import Direction, KeyRange, coerce_range
from .query import Record


class Connection:
    """Open database handle with a small CRUD surface."""

    def __init__(self, database: Any):
        self._db = database
        self._closed = False
        self.name = database.name
        self.version = database.version

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"Connection(name={self.name!r}, version={self.version}, {state})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def database(self) -> Any:
        """Underlying engine database handle."""
        return self._require_open()

    @property
    def collection_names(self) -> list[str]:
        return list(self._require_open().object_store_names)

    def _require_open(self) -> Any:
        if self._closed:
            raise DatabaseNotOpenError(f"Database {self.name} is closed")
        return self._db

    def _writable(self, collection: str) -> Transaction:
        db = self._require_open()
        query.require_collection(db, collection)
        return Transaction(db, [collection], TransactionMode.READWRITE)

    # =========================================================================
    # WRITES
    # =========================================================================

    async def insert(self, collection: str, value: Any, key: Any = None) -> Any:
        """
        Add a record; fails with ConstraintError when the key exists.

        Returns:
            The record's key (generated when the collection has a key generator)
        """
        async with self._writable(collection) as tx:
            return await await_request(tx.object_store(collection).add(value, key))

    async def upsert(self, collection: str, value: Any, key: Any = None) -> Any:
        """Add or replace a record. Returns its key."""
        async with self._writable(collection) as tx:
            return await await_request(tx.object_store(collection).put(value, key))

    async def delete(self, collection: str, key: Union[Any, KeyRange]) -> None:
        """Delete the record at ``key`` (or every record in a KeyRange)."""
        async with self._writable(collection) as tx:
            await await_request(tx.object_store(collection).delete(key))

    async def clear(self, collection: str) -> None:
        async with self._writable(collection) as tx:
            await await_request(tx.object_store(collection).clear())

    async def insert_many(self, data: Mapping[str, list]) -> dict[str, list]:
        """
        Add many records across collections in one read-write transaction.

        Args:
            data: {collection: [value, ...]}; a value may be a ``(value, key)``
                  tuple for collections without a key path

        Returns:
            {collection: [key, ...]} in input order
        """
        return await self._write_many(data, overwrite=False)

    async def upsert_many(self, data: Mapping[str, list]) -> dict[str, list]:
        """Like insert_many but replaces existing records."""
        return await self._write_many(data, overwrite=True)

    async def _write_many(self, data: Mapping[str, list], overwrite: bool) -> dict[str, list]:
        db = self._require_open()
        for collection in data:
            query.require_collection(db, collection)
        if not data:
            return {}

        units = {}
        for collection, values in data.items():
            for position, item in enumerate(values):
                value, key = item if isinstance(item, tuple) else (item, None)
                units[(collection, position)] = (collection, value, key)

        async with Transaction(db, list(data), TransactionMode.READWRITE) as tx:

            def write(collection, value, key, done):
                store = tx.object_store(collection)
                request = store.put(value, key) if overwrite else store.add(value, key)
                request.on_success = lambda req: done(None, req.result)
                request.on_error = lambda req: done(req.error or "write failed")

            written = await tasks.parallel(
                {unit_key: partial(write, *args) for unit_key, args in units.items()}
            )

        result = {collection: [] for collection in data}
        for (collection, _position), key in written.items():
            result[collection].append(key)
        ui_log.debug(f"{'upsert' if overwrite else 'insert'}_many: {sum(map(len, result.values()))} record(s)")
        return result

    # =========================================================================
    # READS
    # =========================================================================

    async def get_object(self, collection: str, key: Any) -> Any:
        """Value stored at ``key``, or None."""
        db = self._require_open()
        query.require_collection(db, collection)
        async with Transaction(db, [collection], TransactionMode.READONLY) as tx:
            return await await_request(tx.object_store(collection).get(key))

    async def get(
        self,
        collection: str,
        index: Optional[str] = None,
        range: Union[KeyRange, Any, None] = None,
        direction: Union[Direction, str] = Direction.ASC,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]:
        """Scan a collection or index; see idbstore.query.scan."""
        return await query.scan(
            self._require_open(),
            collection,
            index,
            range=range,
            direction=direction,
            limit=limit,
            offset=offset,
        )

    scan = get

    async def get_all(
        self,
        collection: str,
        range: Union[KeyRange, Any, None] = None,
        direction: Union[Direction, str] = Direction.DESC,
    ) -> list:
        """All values of a collection, newest key first by default."""
        db = self._require_open()
        query.require_collection(db, collection)
        direction = Direction.coerce(direction)
        values = []

        def on_item(cursor) -> bool:
            values.append(cursor.value)
            return True

        async with Transaction(db, [collection], TransactionMode.READONLY) as tx:
            store = tx.object_store(collection)
            await walk_cursor(store.open_cursor(coerce_range(range), direction.value), on_item)
        return values

    async def count(
        self,
        collection: str,
        index: Optional[str] = None,
        range: Union[KeyRange, Any, None] = None,
    ) -> int:
        return await query.count(self._require_open(), collection, index, range)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def on_version_change(self, handler) -> None:
        """
        Register ``handler(BlockedEvent)``, called when another open wants to
        upgrade or delete this database. Closing the connection from the
        handler lets that open proceed.
        """
        self._require_open().on_version_change = handler

    def close(self) -> None:
        """Close the handle; later calls raise DatabaseNotOpenError."""
        if self._closed:
            return
        self._closed = True
        self._db.close()
        ui_log.debug(f"Closed database {self.name} (version {self.version})")
