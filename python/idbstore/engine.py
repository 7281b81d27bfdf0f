# -*- encoding: utf-8 -*-
"""
Storage engine surface and the awaitable helpers built on it.

An engine is any object shaped like IndexedDB with Python naming. Requests
are one-shot event objects: the engine sets ``result`` or ``error`` and then
calls ``on_success(request)`` or ``on_error(request)``. Cursor requests fire
``on_success`` once per position and once more with ``result`` None when the
cursor is exhausted. Two engines ship with the package: ``MemoryEngine``
(idbstore.memory) and ``BrowserEngine`` (idbstore.browser).

The helpers here turn those events into awaitables. Cursor walks run their
per-item callback inside the engine's success event so that a transaction
never goes idle between steps.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from . import ui_log
from .errors import IndexedDBRequestError, TransactionAbortedError


# =============================================================================
# ENGINE SURFACE
# =============================================================================


class TransactionMode(Enum):
    """IndexedDB transaction modes."""

    READONLY = "readonly"
    READWRITE = "readwrite"
    VERSIONCHANGE = "versionchange"


class Request(Protocol):
    result: Any
    error: Optional[IndexedDBRequestError]
    on_success: Optional[Callable[[Any], None]]
    on_error: Optional[Callable[[Any], None]]


class OpenRequest(Request, Protocol):
    on_upgrade_needed: Optional[Callable[[Any], Any]]
    on_blocked: Optional[Callable[[Any], None]]


class Engine(Protocol):
    def open(self, name: str, version: int) -> OpenRequest: ...

    def delete_database(self, name: str) -> Request: ...


class UpgradeEvent:
    """Payload of ``on_upgrade_needed``."""

    def __init__(self, old_version: int, new_version: int, database: Any, transaction: Any):
        self.old_version = old_version
        self.new_version = new_version
        self.database = database
        self.transaction = transaction

    def __repr__(self):
        return f"UpgradeEvent(old_version={self.old_version}, new_version={self.new_version})"


class BlockedEvent:
    """Payload of ``on_blocked`` and ``on_version_change``."""

    def __init__(self, old_version: int, new_version: Optional[int]):
        self.old_version = old_version
        self.new_version = new_version

    def __repr__(self):
        return f"BlockedEvent(old_version={self.old_version}, new_version={self.new_version})"


def dispatch(handler: Optional[Callable], arg: Any) -> Any:
    """Call an engine event handler; its errors are logged, not propagated."""
    if handler is None:
        return None
    try:
        return handler(arg)
    except Exception as ex:
        ui_log.fail(f"Uncaught error in engine event handler: {type(ex).__name__}: {ex}")
        return None


def _request_error(request: Any, default: str) -> IndexedDBRequestError:
    error = getattr(request, "error", None)
    if isinstance(error, IndexedDBRequestError):
        return error
    return IndexedDBRequestError(str(error) if error else default)


# =============================================================================
# AWAITABLE HELPERS
# =============================================================================


async def await_request(request: Any) -> Any:
    """
    Convert an engine request to a Python awaitable.

    Returns:
        request.result once ``on_success`` fires

    Raises:
        IndexedDBRequestError: when ``on_error`` fires
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def on_success(req):
        if not future.done():
            future.set_result(req.result)

    def on_error(req):
        if not future.done():
            future.set_exception(_request_error(req, "Unknown error"))

    request.on_success = on_success
    request.on_error = on_error
    return await future


def watch_transaction(tx: Any) -> asyncio.Future:
    """
    Install completion handlers on ``tx`` and return a future for its outcome.

    The future raises TransactionAbortedError when the transaction aborts and
    IndexedDBRequestError when it reports an error.
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def on_complete(_tx):
        if not future.done():
            future.set_result(True)

    def on_error(_tx):
        if not future.done():
            future.set_exception(_request_error(_tx, "Transaction error"))

    def on_abort(_tx):
        if not future.done():
            error = getattr(_tx, "error", None)
            message = f"Transaction aborted: {error}" if error else "Transaction aborted"
            future.set_exception(TransactionAbortedError(message))

    tx.on_complete = on_complete
    tx.on_error = on_error
    tx.on_abort = on_abort
    return future


async def walk_cursor(
    request: Any,
    on_item: Callable[[Any], bool],
    on_done: Optional[Callable[[], None]] = None,
) -> None:
    """
    Walk a cursor without yielding to the event loop between steps.

    Every step is handled in the request's synchronous success callback, so
    the owning transaction stays active for the whole walk. ``on_done`` runs
    in the same callback after exhaustion (or after ``on_item`` returns
    False) and may issue further requests on the live transaction.

    Args:
        request: Cursor request from ``open_cursor``
        on_item: Called for each cursor position. Return True to continue,
                 False to stop early.
        on_done: Called after the walk ends.

    Raises:
        IndexedDBRequestError: on a cursor error; later steps are not run
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def finish():
        try:
            if on_done is not None:
                on_done()
            future.set_result(True)
        except Exception as e:
            future.set_exception(e)

    def on_success(req):
        if future.done():
            return
        cursor = req.result
        if cursor is None:
            finish()
            return
        try:
            should_continue = on_item(cursor)
        except Exception as e:
            future.set_exception(e)
            return
        if should_continue:
            cursor.continue_()
        else:
            finish()

    def on_error(req):
        if not future.done():
            future.set_exception(_request_error(req, "Cursor error"))

    request.on_success = on_success
    request.on_error = on_error
    await future


class Transaction:
    """
    Async context manager for engine transactions.

    The transaction commits when the context exits without error and the
    exit waits for completion. When the body raises, the transaction is
    aborted and the body's exception propagates.

    Usage:
        async with Transaction(db, ["users"], TransactionMode.READWRITE) as tx:
            store = tx.object_store("users")
            await await_request(store.put(value))
    """

    def __init__(
        self,
        db: Any,
        store_names: list[str],
        mode: TransactionMode = TransactionMode.READONLY,
    ):
        """
        Args:
            db: Engine database handle
            store_names: Object stores to include in the transaction
            mode: READONLY or READWRITE
        """
        self.db = db
        self.store_names = store_names
        self.mode = mode
        self.tx = None

    async def __aenter__(self) -> Any:
        self.tx = self.db.transaction(self.store_names, self.mode.value)
        return self.tx

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.tx is None:
            return False
        if exc_type is None:
            completion = watch_transaction(self.tx)
            commit = getattr(self.tx, "commit", None)
            try:
                if callable(commit):
                    commit()
            except IndexedDBRequestError:
                # a failed request already finished the transaction
                completion.cancel()
                return False
            try:
                await completion
            except TransactionAbortedError:
                ui_log.debug(f"Transaction on {self.store_names} aborted before commit")
        else:
            try:
                self.tx.abort()
            except IndexedDBRequestError:
                # already finished or aborted by the failing request
                pass
        return False
