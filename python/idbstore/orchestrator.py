# -*- encoding: utf-8 -*-
"""
Connection/migration orchestrator.

Opening a database is one engine request that may fire "upgrade needed",
"blocked", "success" and "error" in several orders. Each open is tracked by
an ``_OpenAttempt`` holding the migration state, the deferred ready handle
and one outcome future, so the caller is resolved exactly once:

- upgrade needed: run the migration procedures of the version window in
  series on the upgrade transaction
- success while migrating: keep the handle until the migrations finish
- migration failure: abort the upgrade transaction, fail with MigrationError,
  close any handle delivered afterwards
- blocked: call the caller's ``on_blocked`` handler, or fail with
  DatabaseBlockedError and abort the upgrade if the engine proceeds later

Usage:
    def v1(ctx):
        users = ctx.create_collection("users", key_path="login")
        users.create_index("sort_name", "name")

    def v2(ctx):
        ctx.collection("users").create_index("sort_login", "login", unique=True)

    conn = await Orchestrator(MemoryEngine()).open("app", version=2, migration={1: v1, 2: v2})
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Optional

from . import tasks, ui_log
from .config import OpenOptions, _check_version
from .connection import Connection
from .engine import await_request
from .errors import (
    DatabaseBlockedError,
    IndexedDBError,
    IndexedDBRequestError,
    MigrationError,
)
from .keys import KeyPath


class MigrationState(Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class CollectionSchema:
    """Object store handle inside an upgrade transaction."""

    def __init__(self, store: Any):
        self.store = store

    @property
    def name(self) -> str:
        return self.store.name

    @property
    def index_names(self) -> list[str]:
        return list(self.store.index_names)

    def create_index(
        self, name: str, key_path: KeyPath, unique: bool = False, multi_entry: bool = False
    ) -> "CollectionSchema":
        self.store.create_index(name, key_path, unique=unique, multi_entry=multi_entry)
        return self

    def delete_index(self, name: str) -> "CollectionSchema":
        self.store.delete_index(name)
        return self


class MigrationContext:
    """
    What a migration procedure receives: schema operations bound to the one
    upgrade transaction, plus the version window.

    ``version`` is the version the procedure migrates to. Data changes go
    through ``collection(name).store`` (raw object store requests).
    """

    def __init__(self, database: Any, transaction: Any, old_version: int, new_version: int, version: int):
        self.database = database
        self.transaction = transaction
        self.old_version = old_version
        self.new_version = new_version
        self.version = version

    @property
    def collection_names(self) -> list[str]:
        return list(self.database.object_store_names)

    def create_collection(
        self, name: str, key_path: KeyPath = None, auto_increment: bool = False
    ) -> CollectionSchema:
        return CollectionSchema(
            self.database.create_object_store(name, key_path=key_path, auto_increment=auto_increment)
        )

    def delete_collection(self, name: str) -> None:
        self.database.delete_object_store(name)

    def collection(self, name: str) -> CollectionSchema:
        return CollectionSchema(self.transaction.object_store(name))


def _abort_quietly(transaction: Any) -> None:
    try:
        transaction.abort()
    except IndexedDBRequestError as ex:
        # already finished
        ui_log.debug(f"Upgrade transaction abort skipped: {ex}")


def _close_quietly(database: Any) -> None:
    try:
        database.close()
    except IndexedDBError as ex:
        ui_log.debug(f"Closing late database handle failed: {ex}")


class _OpenAttempt:
    """State machine for one open request."""

    def __init__(self, engine: Any, name: str, options: OpenOptions):
        self.engine = engine
        self.name = name
        self.options = options
        self.state = MigrationState.NOT_STARTED
        self.ready = None
        self.upgrade_tx = None
        self.current_version: Optional[int] = None
        self.outcome: asyncio.Future = asyncio.get_running_loop().create_future()

    def start(self) -> asyncio.Future:
        request = self.engine.open(self.name, self.options.version)
        request.on_upgrade_needed = self.on_upgrade_needed
        request.on_success = self.on_success
        request.on_error = self.on_error
        request.on_blocked = self.on_blocked
        ui_log.debug(f"Opening database {self.name} (version {self.options.version})")
        return self.outcome

    def resolve(self, database: Any) -> None:
        ui_log.info(f"Connected to database {self.name} (version {database.version})")
        self.outcome.set_result(Connection(database))

    def reject(self, error: BaseException) -> None:
        if not self.outcome.done():
            self.outcome.set_exception(error)

    # Engine events

    def on_upgrade_needed(self, event: Any) -> Optional[asyncio.Future]:
        if self.outcome.done():
            # the caller already got an error (blocked); do not let a late upgrade through
            ui_log.warn(f"Aborting late upgrade of database {self.name}")
            _abort_quietly(event.transaction)
            return None

        self.state = MigrationState.IN_PROGRESS
        self.upgrade_tx = event.transaction
        ui_log.info(
            f"Upgrading database {self.name} from version {event.old_version} to {event.new_version}"
        )
        units = {
            version: self._unit(
                version,
                procedure,
                MigrationContext(
                    event.database, event.transaction, event.old_version, event.new_version, version
                ),
            )
            for version, procedure in self.options.plan(event.old_version, event.new_version)
        }
        migrated = tasks.start_series(units)
        migrated.add_done_callback(self.on_migrated)
        return migrated

    def _unit(self, version: int, procedure: Callable, context: MigrationContext) -> Callable:
        def unit(done):
            self.current_version = version
            ui_log.debug(f"Running migration {version} of database {self.name}")
            result = procedure(context)
            if not inspect.isawaitable(result):
                done(None, result)
                return

            def on_task(task):
                if task.cancelled():
                    done(asyncio.CancelledError(f"migration {version} cancelled"))
                elif task.exception() is not None:
                    done(task.exception())
                else:
                    done(None, task.result())

            asyncio.ensure_future(result).add_done_callback(on_task)

        return unit

    def on_migrated(self, migrated: asyncio.Future) -> None:
        error = migrated.exception()
        if error is not None:
            self.state = MigrationState.FAILED
            failure = MigrationError(error, version=self.current_version)
            failure.__cause__ = error
            ui_log.fail(f"Database {self.name}: {failure}")
            _abort_quietly(self.upgrade_tx)
            self.reject(failure)
            if self.ready is not None:
                _close_quietly(self.ready)
                self.ready = None
            return

        self.state = MigrationState.DONE
        ui_log.debug(f"Migrations of database {self.name} finished")
        if self.ready is not None and not self.outcome.done():
            ready, self.ready = self.ready, None
            self.resolve(ready)

    def on_success(self, request: Any) -> None:
        database = request.result
        if self.outcome.done() or self.state == MigrationState.FAILED:
            _close_quietly(database)
            return
        if self.state == MigrationState.IN_PROGRESS:
            ui_log.debug(f"Database {self.name} ready before its migrations finished; deferring")
            self.ready = database
            return
        self.resolve(database)

    def on_error(self, request: Any) -> None:
        if self.outcome.done():
            return
        error = request.error
        if not isinstance(error, BaseException):
            error = IndexedDBRequestError(
                f"Failed to connect to database {self.name}: {error or 'unknown error'}"
            )
        ui_log.fail(f"Opening database {self.name} failed: {error}")
        self.reject(error)

    def on_blocked(self, event: Any) -> None:
        ui_log.warn(
            f"Opening database {self.name} (version {self.options.version}) is blocked "
            f"by open connections at version {event.old_version}"
        )
        if self.options.on_blocked is not None:
            try:
                self.options.on_blocked(event)
            except Exception as ex:
                self.reject(ex)
            return
        self.reject(
            DatabaseBlockedError(
                f"Database {self.name} upgrade to version {self.options.version} blocked: "
                f"close other connections first"
            )
        )


class Orchestrator:
    """
    Opens connections through an injected engine.

    ``default_version`` is the version an open targets when the caller gives
    none (``Settings.make_orchestrator`` passes the configured one).
    """

    def __init__(self, engine: Any, default_version: int = 1):
        self.engine = engine
        self.default_version = _check_version(default_version, "default_version")

    async def open(
        self,
        name: str,
        version: Optional[int] = None,
        migration: Optional[dict[int, Callable]] = None,
        on_blocked: Optional[Callable[[Any], None]] = None,
    ) -> Connection:
        """
        Open ``name`` at ``version`` (``default_version`` when None), running
        migrations for versions above the stored one.

        Raises:
            ValueError/TypeError: invalid version or migration plan
            MigrationError: a migration procedure failed (the upgrade is rolled back)
            DatabaseBlockedError: other connections block the upgrade and no
                ``on_blocked`` handler was given
            IndexedDBRequestError: the engine refused the open (VersionError, ...)
        """
        if version is None:
            version = self.default_version
        options = OpenOptions(version, migration, on_blocked).validate()
        return await _OpenAttempt(self.engine, name, options).start()

    def connect(self, name: str, callback: Callable[[Any, Any], None], **options) -> asyncio.Future:
        """
        Callback form of ``open``: ``callback(error, connection)`` is called
        exactly once. Returns the scheduled task.
        """

        async def run():
            try:
                connection = await self.open(name, **options)
            except Exception as ex:
                callback(ex, None)
                return None
            callback(None, connection)
            return connection

        return asyncio.ensure_future(run())

    async def delete_database(self, name: str) -> None:
        await await_request(self.engine.delete_database(name))
        ui_log.info(f"Deleted database {name}")


def _default_engine():
    from .browser import BrowserEngine

    return BrowserEngine()


async def open(
    name: str,
    version: Optional[int] = None,
    migration: Optional[dict[int, Callable]] = None,
    on_blocked: Optional[Callable[[Any], None]] = None,
    engine: Any = None,
) -> Connection:
    """Open through ``engine`` (a new BrowserEngine when None)."""
    orchestrator = Orchestrator(engine if engine is not None else _default_engine())
    return await orchestrator.open(name, version, migration, on_blocked)


def connect(name: str, callback: Callable[[Any, Any], None], engine: Any = None, **options) -> asyncio.Future:
    orchestrator = Orchestrator(engine if engine is not None else _default_engine())
    return orchestrator.connect(name, callback, **options)


async def delete_database(name: str, engine: Any = None) -> None:
    await Orchestrator(engine if engine is not None else _default_engine()).delete_database(name)
