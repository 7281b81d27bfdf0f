# -*- encoding: utf-8 -*-
"""
Exception hierarchy shared by the engines, the query engine and the
orchestrator.

Engine failures keep the DOMException-style ``name`` ("ConstraintError",
"NotFoundError", ...) so callers can branch on it the same way in the
browser and under CPython.
"""

from __future__ import annotations

from typing import Optional


class IndexedDBError(Exception):
    """Base exception for idbstore operations."""

    pass


class IndexedDBRequestError(IndexedDBError):
    """Request-level error with optional DOMException name."""

    def __init__(self, message: str, *, name: Optional[str] = None):
        super().__init__(message)
        self.name = name


class NotFoundError(IndexedDBRequestError):
    """Referenced collection or index does not exist."""

    def __init__(self, message: str):
        super().__init__(message, name="NotFoundError")


class DatabaseNotOpenError(IndexedDBError):
    """Database has not been opened or was already closed."""

    pass


class TransactionAbortedError(IndexedDBError):
    """Transaction was aborted."""

    pass


class DatabaseBlockedError(IndexedDBError):
    """Database upgrade blocked by another open connection."""

    pass


class MigrationError(IndexedDBError):
    """A migration procedure failed; the upgrade transaction is rolled back."""

    PREFIX = "Failed while migrating database: "

    def __init__(self, cause: BaseException, *, version: Optional[int] = None):
        super().__init__(f"{self.PREFIX}{cause}")
        self.cause = cause
        self.version = version


def request_error(name: str, message: str) -> IndexedDBRequestError:
    """Build the request error for a DOMException name."""
    if name == "NotFoundError":
        return NotFoundError(message)
    return IndexedDBRequestError(message, name=name)


class TaskError(IndexedDBError):
    """A task unit reported a failure that was not an exception instance."""

    def __init__(self, error):
        super().__init__(str(error))
        self.error = error
