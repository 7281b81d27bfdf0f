# -*- encoding: utf-8 -*-
"""
Cursor query engine.

A scan walks a primary or secondary index in one direction and materializes
the visited records into a list, optionally deduplicated per key and
paginated with ``offset``/``limit``. The cursor is always opened in the
base direction (``next`` or ``prev``); uniqueness is applied here, so the
first record visited for each key wins whatever the engine does for
``nextunique``/``prevunique``.

Usage:
    records = await scan(db, "users", "sort_name", direction=Direction.ASC, limit=4, offset=1)
    [r.key for r in records]
"""

from __future__ import annotations

from typing import Any, NamedTuple, Optional, Union

from . import ui_log
from .engine import Transaction, TransactionMode, await_request, walk_cursor
from .errors import NotFoundError
from .keys import Direction, KeyRange, coerce_range, sort_key


class Record(NamedTuple):
    """One scan result: index key (or primary key) and the stored value."""

    key: Any
    value: Any


def _missing_collection(database: Any, collection: str) -> NotFoundError:
    return NotFoundError(
        f"Database {database.name} (version {database.version}) doesn't contain "
        f'"{collection}" object store'
    )


def require_collection(database: Any, collection: str) -> None:
    """Raise NotFoundError unless ``collection`` exists in ``database``."""
    if collection not in list(database.object_store_names):
        raise _missing_collection(database, collection)


def _source(store: Any, collection: str, index: Optional[str]) -> Any:
    if index is None:
        return store
    if index not in list(store.index_names):
        raise NotFoundError(f'Object store "{collection}" doesn\'t contain "{index}" index')
    return store.index(index)


def _check_window(limit: Optional[int], offset: int) -> None:
    if offset is None or offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset!r}")
    if limit is not None and limit < 0:
        raise ValueError(f"limit must be >= 0, got {limit!r}")


async def scan(
    database: Any,
    collection: str,
    index: Optional[str] = None,
    *,
    range: Union[KeyRange, Any, None] = None,
    direction: Union[Direction, str] = Direction.ASC,
    limit: Optional[int] = None,
    offset: int = 0,
) -> list[Record]:
    """
    Scan a collection or one of its indexes.

    Args:
        database: Engine database handle
        collection: Object store name
        index: Index name, or None for the primary key order
        range: KeyRange or bare key restricting the scan
        direction: Direction or its cursor string ("next", "prevunique", ...)
        limit: Maximum number of records returned, None for no bound
        offset: Records skipped after direction and uniqueness filtering

    Returns:
        list of Record(key, value)

    Raises:
        NotFoundError: unknown collection or index
        ValueError: negative limit or offset
        IndexedDBRequestError: cursor failure; partial results are discarded
    """
    direction = Direction.coerce(direction)
    _check_window(limit, offset)
    require_collection(database, collection)
    key_range = coerce_range(range)

    records: list[Record] = []
    async with Transaction(database, [collection], TransactionMode.READONLY) as tx:
        source = _source(tx.object_store(collection), collection, index)
        if limit == 0:
            return records

        seen = set()
        skipped = 0

        def on_item(cursor) -> bool:
            nonlocal skipped
            key = cursor.key
            if direction.unique:
                marker = sort_key(key)
                if marker in seen:
                    return True
                seen.add(marker)
            if skipped < offset:
                skipped += 1
                return True
            records.append(Record(key, cursor.value))
            # enough records: stop instead of walking the rest
            return limit is None or len(records) < limit

        await walk_cursor(source.open_cursor(key_range, direction.base.value), on_item)

    ui_log.debug(
        f"scan {collection}{'.' + index if index else ''} {direction.value}: "
        f"{len(records)} record(s)"
    )
    return records


async def count(
    database: Any,
    collection: str,
    index: Optional[str] = None,
    range: Union[KeyRange, Any, None] = None,
) -> int:
    """Count records of a collection or index, optionally within a range."""
    require_collection(database, collection)
    async with Transaction(database, [collection], TransactionMode.READONLY) as tx:
        source = _source(tx.object_store(collection), collection, index)
        return await await_request(source.count(coerce_range(range)))
