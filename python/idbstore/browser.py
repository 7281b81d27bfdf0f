# -*- encoding: utf-8 -*-
"""
Browser storage engine: IndexedDB through Pyodide.

BrowserEngine wraps ``js.indexedDB`` objects in thin Python classes with the
engine surface of idbstore.engine (snake_case methods, ``on_*`` handler
slots taking the wrapper). Values cross the boundary with ``to_js`` /
``to_py``; dicts become plain JS objects.

Memory Safety:
- Every handler installed on a JS object is a Pyodide proxy
- Request proxies are destroyed once the request settles (cursor requests
  once the cursor is exhausted or fails)
- Transaction proxies are destroyed on complete/abort, database proxies on
  close

Usage (PyScript):
    conn = await open("app", version=2, migration=plan)   # BrowserEngine by default
"""

from __future__ import annotations

import asyncio
import datetime
from typing import Any, Callable, Optional

from . import ui_log
from .engine import BlockedEvent, TransactionMode, UpgradeEvent, dispatch
from .errors import IndexedDBError, IndexedDBRequestError, request_error
from .keys import Direction, coerce_range

# Pyodide/PyScript browser environment imports
try:
    from js import Date, IDBKeyRange, Object, indexedDB
    from pyodide.ffi import JsException, create_proxy, to_js
except ImportError:
    Date = None
    IDBKeyRange = None
    Object = None
    indexedDB = None
    JsException = None
    create_proxy = None
    to_js = None


# =============================================================================
# CONVERSIONS
# =============================================================================


def _is_js_null(value: Any) -> bool:
    """Return True if value represents JS null/undefined in Pyodide."""
    if value is None:
        return True
    return type(value).__name__ in ("JsNull", "JsUndefined")


def _to_py(value: Any) -> Any:
    if _is_js_null(value):
        return None
    if hasattr(value, "to_py"):
        result = value.to_py()
        if isinstance(result, memoryview):
            return result.tobytes()
        return result
    return value


def _to_js(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return Date.new(value.timestamp() * 1000)
    if isinstance(value, (dict, list, tuple, bytes, bytearray)):
        return to_js(value, dict_converter=Object.fromEntries)
    return value


def _to_js_query(query: Any) -> Any:
    """KeyRange or bare key to an IDBKeyRange/key; None stays None."""
    key_range = coerce_range(query)
    if key_range is None:
        return None
    lower = _to_js(key_range.lower) if key_range.lower is not None else None
    upper = _to_js(key_range.upper) if key_range.upper is not None else None
    if lower is not None and upper is not None:
        return IDBKeyRange.bound(lower, upper, key_range.lower_open, key_range.upper_open)
    if lower is not None:
        return IDBKeyRange.lowerBound(lower, key_range.lower_open)
    if upper is not None:
        return IDBKeyRange.upperBound(upper, key_range.upper_open)
    return None


def _translate(error: Any, default: str = "Unknown error") -> IndexedDBRequestError:
    """DOMException (or JsException) to IndexedDBRequestError with its name."""
    if isinstance(error, IndexedDBRequestError):
        return error
    if _is_js_null(error):
        return IndexedDBRequestError(default)
    name = getattr(error, "name", None)
    message = getattr(error, "message", None) or str(error) or default
    return request_error(name, message) if name else IndexedDBRequestError(message)


def _call(fn: Callable, *args) -> Any:
    """Call into JS, raising IndexedDBRequestError for DOMExceptions."""
    try:
        return fn(*args)
    except Exception as ex:
        if JsException is not None and isinstance(ex, JsException):
            raise _translate(ex) from ex
        raise


def _string_list(names: Any) -> list[str]:
    return [names.item(i) for i in range(names.length)]


def _release(proxies: list) -> None:
    """Destroy proxies after the current JS callback returns."""
    pending, proxies[:] = list(proxies), []

    def destroy():
        for proxy in pending:
            proxy.destroy()

    asyncio.get_running_loop().call_soon(destroy)


class _EventTarget:
    """
    Maps Python ``on_*`` slots to JS ``on*`` event attributes.

    Assigning a handler installs a proxy that calls ``handler(payload)``.
    """

    _events: dict[str, str] = {}

    def __init__(self, js_obj: Any):
        object.__setattr__(self, "_js", js_obj)
        object.__setattr__(self, "_proxies", [])
        object.__setattr__(self, "_handlers", {})

    def __getattr__(self, name):
        if name in type(self)._events:
            return self._handlers.get(name)
        raise AttributeError(name)

    def __setattr__(self, name, value):
        events = type(self)._events
        if name not in events:
            object.__setattr__(self, name, value)
            return
        self._handlers[name] = value
        if value is None:
            setattr(self._js, events[name], None)
            return
        proxy = create_proxy(lambda event, slot=name: self._fire(slot, event))
        self._proxies.append(proxy)
        setattr(self._js, events[name], proxy)

    def _fire(self, slot: str, event: Any) -> None:
        dispatch(self._handlers.get(slot), self._payload(slot, event))

    def _payload(self, slot: str, event: Any) -> Any:
        return self


# =============================================================================
# REQUESTS AND CURSORS
# =============================================================================


class BrowserRequest(_EventTarget):
    """IDBRequest wrapper; ``result`` and ``error`` are read on settle."""

    _events = {"on_success": "onsuccess", "on_error": "onerror"}

    def __init__(self, js_request: Any, convert: Callable[[Any], Any] = _to_py):
        super().__init__(js_request)
        self._convert = convert
        self.result = None
        self.error = None

    def _payload(self, slot: str, event: Any) -> Any:
        if slot == "on_success":
            self.result = self._convert(self._js.result)
            self.error = None
            if not self._keeps_firing():
                _release(self._proxies)
        elif slot == "on_error":
            self.result = None
            self.error = _translate(self._js.error)
            _release(self._proxies)
        return self

    def _keeps_firing(self) -> bool:
        return False


class BrowserCursorRequest(BrowserRequest):
    """Cursor request; proxies live until exhaustion or the end of the transaction."""

    def __init__(self, js_request: Any, source: Any):
        super().__init__(js_request, self._cursor)
        self._source = source
        source.transaction._children.append(self)

    def _cursor(self, js_cursor: Any) -> Optional["BrowserCursor"]:
        return None if _is_js_null(js_cursor) else BrowserCursor(js_cursor, self._source)

    def _keeps_firing(self) -> bool:
        return self.result is not None


class BrowserCursor:
    def __init__(self, js_cursor: Any, source: Any):
        self._js = js_cursor
        self.source = source
        self.key = _to_py(js_cursor.key)
        self.primary_key = _to_py(js_cursor.primaryKey)
        self.value = _to_py(getattr(js_cursor, "value", None))

    def continue_(self, key: Any = None) -> None:
        if key is None:
            _call(self._js.continue_)
        else:
            _call(self._js.continue_, _to_js(key))

    def advance(self, count: int) -> None:
        _call(self._js.advance, count)

    def delete(self) -> BrowserRequest:
        return BrowserRequest(_call(self._js.delete))

    def update(self, value: Any) -> BrowserRequest:
        return BrowserRequest(_call(self._js.update, _to_js(value)))


class _BlockableRequest(BrowserRequest):
    """Open or delete request; fires on_blocked while other connections stay open."""

    _events = {"on_success": "onsuccess", "on_error": "onerror", "on_blocked": "onblocked"}

    def _payload(self, slot: str, event: Any) -> Any:
        if slot == "on_blocked":
            new_version = None if _is_js_null(event.newVersion) else event.newVersion
            return BlockedEvent(event.oldVersion, new_version)
        return super()._payload(slot, event)


class BrowserOpenRequest(_BlockableRequest):
    _events = dict(_BlockableRequest._events, on_upgrade_needed="onupgradeneeded")

    def __init__(self, js_request: Any):
        super().__init__(js_request, self._database)
        object.__setattr__(self, "_db", None)

    def _database(self, js_db: Any) -> "BrowserDatabase":
        if self._db is None:
            object.__setattr__(self, "_db", BrowserDatabase(js_db))
        return self._db

    def _fire(self, slot: str, event: Any) -> None:
        if slot != "on_upgrade_needed":
            super()._fire(slot, event)
            return
        database = self._database(self._js.result)
        tx = BrowserTransaction(self._js.transaction, database)
        database._upgrade = tx
        self.result = database
        handler = self._handlers.get(slot)
        try:
            if handler is not None:
                handler(UpgradeEvent(event.oldVersion, event.newVersion, database, tx))
        except Exception as ex:
            ui_log.fail(f"Upgrade of '{database.name}' failed: {ex}")
            _call(tx.abort)


# =============================================================================
# TRANSACTIONS, STORES, INDEXES
# =============================================================================


class BrowserTransaction(_EventTarget):
    _events = {"on_complete": "oncomplete", "on_error": "onerror", "on_abort": "onabort"}

    def __init__(self, js_tx: Any, database: "BrowserDatabase"):
        super().__init__(js_tx)
        self.db = database
        self.mode = TransactionMode(js_tx.mode)
        self._children: list[_EventTarget] = []

    @property
    def error(self) -> Optional[IndexedDBRequestError]:
        error = self._js.error
        return None if _is_js_null(error) else _translate(error)

    @property
    def object_store_names(self) -> list[str]:
        return _string_list(self._js.objectStoreNames)

    def object_store(self, name: str) -> "BrowserObjectStore":
        return BrowserObjectStore(_call(self._js.objectStore, name), self)

    def commit(self) -> None:
        _call(self._js.commit)

    def abort(self) -> None:
        _call(self._js.abort)

    def _fire(self, slot: str, event: Any) -> None:
        super()._fire(slot, event)
        if slot in ("on_complete", "on_abort"):
            # cursor walks stopped early never see their last success event
            for child in self._children:
                _release(child._proxies)
            self._children.clear()
            _release(self._proxies)


class _BrowserSource:
    _js: Any

    def open_cursor(self, query: Any = None, direction: Any = "next") -> BrowserCursorRequest:
        direction = Direction.coerce(direction).value
        return BrowserCursorRequest(_call(self._js.openCursor, _to_js_query(query), direction), self)

    def count(self, query: Any = None) -> BrowserRequest:
        return BrowserRequest(_call(self._js.count, _to_js_query(query)))

    def get(self, query: Any) -> BrowserRequest:
        return BrowserRequest(_call(self._js.get, _to_js_query(query)))

    def get_all(self, query: Any = None, count: Optional[int] = None) -> BrowserRequest:
        if count:
            return BrowserRequest(_call(self._js.getAll, _to_js_query(query), count))
        return BrowserRequest(_call(self._js.getAll, _to_js_query(query)))


class BrowserIndex(_BrowserSource):
    def __init__(self, js_index: Any, store: "BrowserObjectStore"):
        self._js = js_index
        self.object_store = store
        self.transaction = store.transaction
        self.name = js_index.name
        self.key_path = _to_py(js_index.keyPath)
        self.unique = bool(js_index.unique)
        self.multi_entry = bool(js_index.multiEntry)


class BrowserObjectStore(_BrowserSource):
    def __init__(self, js_store: Any, transaction: BrowserTransaction):
        self._js = js_store
        self.transaction = transaction
        self.name = js_store.name
        self.key_path = _to_py(js_store.keyPath)
        self.auto_increment = bool(js_store.autoIncrement)

    @property
    def index_names(self) -> list[str]:
        return _string_list(self._js.indexNames)

    def index(self, name: str) -> BrowserIndex:
        return BrowserIndex(_call(self._js.index, name), self)

    def create_index(
        self, name: str, key_path: Any, unique: bool = False, multi_entry: bool = False
    ) -> BrowserIndex:
        options = _to_js({"unique": unique, "multiEntry": multi_entry})
        return BrowserIndex(_call(self._js.createIndex, name, _to_js(key_path), options), self)

    def delete_index(self, name: str) -> None:
        _call(self._js.deleteIndex, name)

    def add(self, value: Any, key: Any = None) -> BrowserRequest:
        if key is None:
            return BrowserRequest(_call(self._js.add, _to_js(value)))
        return BrowserRequest(_call(self._js.add, _to_js(value), _to_js(key)))

    def put(self, value: Any, key: Any = None) -> BrowserRequest:
        if key is None:
            return BrowserRequest(_call(self._js.put, _to_js(value)))
        return BrowserRequest(_call(self._js.put, _to_js(value), _to_js(key)))

    def delete(self, query: Any) -> BrowserRequest:
        return BrowserRequest(_call(self._js.delete, _to_js_query(query)))

    def clear(self) -> BrowserRequest:
        return BrowserRequest(_call(self._js.clear))


# =============================================================================
# DATABASES
# =============================================================================


class BrowserDatabase(_EventTarget):
    _events = {"on_version_change": "onversionchange", "on_close": "onclose"}

    def __init__(self, js_db: Any):
        super().__init__(js_db)
        self._upgrade: Optional[BrowserTransaction] = None

    @property
    def name(self) -> str:
        return self._js.name

    @property
    def version(self) -> int:
        return self._js.version

    @property
    def object_store_names(self) -> list[str]:
        return _string_list(self._js.objectStoreNames)

    def transaction(self, store_names: Any, mode: str = "readonly") -> BrowserTransaction:
        if isinstance(store_names, str):
            store_names = [store_names]
        js_tx = _call(self._js.transaction, to_js(list(store_names)), mode)
        return BrowserTransaction(js_tx, self)

    def create_object_store(
        self, name: str, key_path: Any = None, auto_increment: bool = False
    ) -> BrowserObjectStore:
        options = {"autoIncrement": auto_increment}
        if key_path is not None:
            options["keyPath"] = key_path
        js_store = _call(self._js.createObjectStore, name, _to_js(options))
        return BrowserObjectStore(js_store, self._upgrade)

    def delete_object_store(self, name: str) -> None:
        _call(self._js.deleteObjectStore, name)

    def _payload(self, slot: str, event: Any) -> Any:
        if slot == "on_version_change":
            new_version = None if _is_js_null(event.newVersion) else event.newVersion
            return BlockedEvent(event.oldVersion, new_version)
        return self

    def close(self) -> None:
        _call(self._js.close)
        _release(self._proxies)


class BrowserEngine:
    """Engine over the page's ``indexedDB`` factory."""

    def __init__(self):
        if indexedDB is None:
            raise IndexedDBError("IndexedDB not available (not running under Pyodide)")

    def open(self, name: str, version: Optional[int] = None) -> BrowserOpenRequest:
        if version is None:
            return BrowserOpenRequest(_call(indexedDB.open, name))
        return BrowserOpenRequest(_call(indexedDB.open, name, version))

    def delete_database(self, name: str) -> _BlockableRequest:
        return _BlockableRequest(_call(indexedDB.deleteDatabase, name))
