# -*- encoding: utf-8 -*-
"""
idbstore: versioned, indexed key-value storage for Pyodide and CPython.

Usage:
    from idbstore import MemoryEngine, Orchestrator, KeyRange, Direction

    conn = await Orchestrator(MemoryEngine()).open("app", version=1, migration={1: create_users})
    await conn.insert("users", {"login": "alex", "name": "Alex"})
    rows = await conn.get("users", "sort_name", range=KeyRange.lower_bound("A"), limit=10)
"""

from .config import OpenOptions, Settings, load_settings
from .connection import Connection
from .errors import (
    DatabaseBlockedError,
    DatabaseNotOpenError,
    IndexedDBError,
    IndexedDBRequestError,
    MigrationError,
    NotFoundError,
    TaskError,
    TransactionAbortedError,
)
from .keys import Direction, KeyRange
from .memory import MemoryEngine
from .orchestrator import (
    MigrationContext,
    MigrationState,
    Orchestrator,
    connect,
    delete_database,
    open,
)
from .query import Record
from .tasks import parallel, series

__version__ = "0.1.0"

__all__ = [
    "Connection",
    "DatabaseBlockedError",
    "DatabaseNotOpenError",
    "Direction",
    "IndexedDBError",
    "IndexedDBRequestError",
    "KeyRange",
    "MemoryEngine",
    "MigrationContext",
    "MigrationError",
    "MigrationState",
    "NotFoundError",
    "OpenOptions",
    "Orchestrator",
    "Record",
    "Settings",
    "TaskError",
    "TransactionAbortedError",
    "connect",
    "delete_database",
    "load_settings",
    "open",
    "parallel",
    "series",
]
