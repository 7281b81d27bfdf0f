# -*- encoding: utf-8 -*-
"""
test_orchestrator.py - open, migrations, blocked upgrades and event races.
"""

from __future__ import annotations

import asyncio

import pytest

from idbstore import (
    Connection,
    DatabaseBlockedError,
    IndexedDBRequestError,
    MigrationError,
    MigrationState,
    Orchestrator,
)
from idbstore.engine import UpgradeEvent, await_request
from idbstore.orchestrator import _OpenAttempt, connect, delete_database, open
from idbstore.config import OpenOptions

from base_fixtures import USERS_STORE, base_migration, create_base_schema


def recorder(calls, label):
    def procedure(ctx):
        calls.append((label, ctx.version, ctx.old_version, ctx.new_version))

    return procedure


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


# =============================================================================
# OPEN AND MIGRATIONS
# =============================================================================


async def test_open_new_database_runs_migration(orchestrator):
    conn = await orchestrator.open("fresh", version=1, migration=base_migration())
    assert isinstance(conn, Connection)
    assert conn.version == 1
    assert sorted(conn.collection_names) == sorted([USERS_STORE, "keypath_false__keygen_true_0"])
    conn.close()


async def test_open_without_migration(orchestrator):
    conn = await orchestrator.open("plain")
    assert conn.version == 1
    assert conn.collection_names == []
    conn.close()


async def test_migrations_run_in_version_order_once(orchestrator):
    calls = []
    plan = {3: recorder(calls, "c"), 1: recorder(calls, "a"), 2: recorder(calls, "b")}

    conn = await orchestrator.open("ordered", version=1, migration=plan)
    conn.close()
    assert calls == [("a", 1, 0, 1)]

    calls.clear()
    conn = await orchestrator.open("ordered", version=3, migration=plan)
    conn.close()
    assert calls == [("b", 2, 1, 3), ("c", 3, 1, 3)]

    calls.clear()
    conn = await orchestrator.open("ordered", version=3, migration=plan)
    conn.close()
    assert calls == [], "no upgrade at the same version"


async def test_sparse_migration_plan(orchestrator):
    calls = []
    plan = {1: recorder(calls, "a"), 4: recorder(calls, "d"), 10: recorder(calls, "j")}
    conn = await orchestrator.open("sparse", version=4, migration=plan)
    conn.close()
    assert [label for label, *_ in calls] == ["a", "d"]


async def test_migration_adds_index_to_existing_store(orchestrator):
    conn = await orchestrator.open("ctx", version=1, migration=base_migration())
    conn.close()

    seen = {}

    def add_foo(ctx):
        users = ctx.collection(USERS_STORE)
        users.create_index("foo", "bar")
        seen["indexes"] = users.index_names

    conn = await orchestrator.open("ctx", version=2, migration={1: create_base_schema, 2: add_foo})
    conn.close()
    assert {"sort_login", "sort_name", "foo"} <= set(seen["indexes"])


async def test_coroutine_migration_writes_data(orchestrator):
    async def seed(ctx):
        store = ctx.collection(USERS_STORE).store
        await await_request(store.put({"name": "Seed", "login": "seed"}))
        await await_request(store.put({"name": "Other", "login": "other"}))

    conn = await orchestrator.open("seeded", version=2, migration={1: create_base_schema, 2: seed})
    assert await conn.count(USERS_STORE) == 2
    assert (await conn.get_object(USERS_STORE, "seed"))["name"] == "Seed"
    conn.close()


async def test_migration_failure_rolls_back(orchestrator, engine):
    def broken(ctx):
        ctx.create_collection("half_done")
        raise RuntimeError("disk on fire")

    with pytest.raises(MigrationError) as excinfo:
        await orchestrator.open("broken", version=1, migration={1: broken})
    error = excinfo.value
    assert str(error).startswith("Failed while migrating database: ")
    assert "disk on fire" in str(error)
    assert isinstance(error.cause, RuntimeError)
    assert error.__cause__ is error.cause
    assert error.version == 1

    # nothing was kept: the next open upgrades from version 0 again
    calls = []
    conn = await orchestrator.open("broken", version=1, migration={1: recorder(calls, "a")})
    assert calls == [("a", 1, 0, 1)]
    assert "half_done" not in conn.collection_names
    conn.close()


async def test_migration_failure_in_later_step_keeps_old_version(orchestrator):
    conn = await orchestrator.open("partial", version=1, migration=base_migration())
    conn.close()

    async def fails(ctx):
        await asyncio.sleep(0)
        raise ValueError("nope")

    with pytest.raises(MigrationError) as excinfo:
        await orchestrator.open("partial", version=3, migration={1: create_base_schema, 2: lambda ctx: None, 3: fails})
    assert excinfo.value.version == 3

    conn = await orchestrator.open("partial", version=1)
    assert conn.version == 1
    conn.close()


async def test_downgrade_is_rejected(orchestrator):
    conn = await orchestrator.open("down", version=2)
    conn.close()
    with pytest.raises(IndexedDBRequestError) as excinfo:
        await orchestrator.open("down", version=1)
    assert excinfo.value.name == "VersionError"


@pytest.mark.parametrize("version", [0, -1, True, 1.5, "2"])
async def test_invalid_version(orchestrator, version):
    with pytest.raises(ValueError):
        await orchestrator.open("bad", version=version)


async def test_invalid_migration_plan(orchestrator):
    with pytest.raises(ValueError):
        await orchestrator.open("bad", version=1, migration={0: create_base_schema})
    with pytest.raises(TypeError):
        await orchestrator.open("bad", version=1, migration=[create_base_schema])
    with pytest.raises(TypeError):
        await orchestrator.open("bad", version=1, migration={1: "not callable"})


async def test_connect_callback_form(orchestrator):
    reported = []
    task = orchestrator.connect("cb", lambda err, conn: reported.append((err, conn)), version=1)
    await task
    assert len(reported) == 1
    error, conn = reported[0]
    assert error is None and isinstance(conn, Connection)
    conn.close()

    reported.clear()
    await orchestrator.connect("cb", lambda err, conn: reported.append((err, conn)), version=0)
    assert len(reported) == 1
    assert isinstance(reported[0][0], ValueError) and reported[0][1] is None


async def test_module_level_helpers(engine):
    conn = await open("module", version=1, migration=base_migration(), engine=engine)
    conn.close()

    reported = []
    await connect("module", lambda err, c: reported.append((err, c)), engine=engine, version=1)
    assert reported[0][0] is None
    reported[0][1].close()

    await delete_database("module", engine=engine)
    assert "module" not in engine.database_names()


async def test_delete_database_resets_schema(orchestrator, engine):
    conn = await orchestrator.open("gone", version=3)
    conn.close()
    await orchestrator.delete_database("gone")
    conn = await orchestrator.open("gone", version=1)
    assert conn.version == 1
    conn.close()


async def test_open_logs_transitions(orchestrator, log_entries):
    conn = await orchestrator.open("logged", version=1, migration=base_migration())
    conn.close()
    messages = [entry["msg"] for entry in log_entries]
    assert any("Upgrading database logged from version 0 to 1" in msg for msg in messages)
    assert any("Connected to database logged" in msg for msg in messages)


# =============================================================================
# BLOCKED UPGRADES
# =============================================================================


async def test_blocked_without_handler_fails(orchestrator, engine):
    first = await orchestrator.open("shared", version=1)

    with pytest.raises(DatabaseBlockedError):
        await orchestrator.open("shared", version=2, migration={2: lambda ctx: ctx.create_collection("late")})

    # once the blocker closes, the engine proceeds; the late upgrade is aborted
    first.close()
    await settle()

    conn = await orchestrator.open("shared", version=1)
    assert conn.version == 1
    assert "late" not in conn.collection_names
    conn.close()


async def test_blocked_with_handler_keeps_waiting(orchestrator):
    first = await orchestrator.open("shared", version=1)
    events = []

    def on_blocked(event):
        events.append((event.old_version, event.new_version))
        first.close()

    conn = await orchestrator.open("shared", version=2, on_blocked=on_blocked)
    assert events == [(1, 2)]
    assert conn.version == 2
    conn.close()


async def test_version_change_handler_avoids_blocking(orchestrator):
    first = await orchestrator.open("shared", version=1)
    seen = []

    def on_version_change(event):
        seen.append(event.new_version)
        first.close()

    first.on_version_change(on_version_change)
    conn = await orchestrator.open("shared", version=5)
    assert seen == [5]
    assert conn.version == 5
    assert first.closed
    conn.close()


# =============================================================================
# EVENT RACES (scripted engine)
# =============================================================================


class FakeDatabase:
    def __init__(self, version):
        self.name = "scripted"
        self.version = version
        self.object_store_names = []
        self.closed = False

    def close(self):
        self.closed = True


class FakeTransaction:
    def __init__(self):
        self.aborted = False

    def abort(self):
        self.aborted = True


class FakeOpenRequest:
    def __init__(self):
        self.on_upgrade_needed = None
        self.on_success = None
        self.on_error = None
        self.on_blocked = None
        self.result = None
        self.error = None


class ScriptedEngine:
    """Engine whose events are fired by the test."""

    def __init__(self):
        self.request = None

    def open(self, name, version):
        self.request = FakeOpenRequest()
        return self.request

    def upgrade(self, old, new):
        self.db = FakeDatabase(new)
        self.tx = FakeTransaction()
        self.request.result = self.db
        return self.request.on_upgrade_needed(UpgradeEvent(old, new, self.db, self.tx))

    def succeed(self):
        self.request.result = self.db if hasattr(self, "db") else FakeDatabase(1)
        self.request.on_success(self.request)

    def fail(self, error):
        self.request.error = error
        self.request.on_error(self.request)


async def test_ready_before_migration_is_deferred():
    engine = ScriptedEngine()
    gate = asyncio.Event()

    async def slow(ctx):
        await gate.wait()

    attempt = _OpenAttempt(engine, "scripted", OpenOptions(2, {2: slow}).validate())
    outcome = attempt.start()
    engine.upgrade(1, 2)
    assert attempt.state is MigrationState.IN_PROGRESS

    engine.succeed()
    await settle()
    assert not outcome.done(), "resolved before the migration finished"
    assert attempt.ready is engine.db

    gate.set()
    conn = await outcome
    assert conn.database is engine.db
    assert attempt.state is MigrationState.DONE
    assert not engine.tx.aborted


async def test_migration_done_before_ready():
    engine = ScriptedEngine()
    attempt = _OpenAttempt(engine, "scripted", OpenOptions(1, {1: lambda ctx: None}).validate())
    outcome = attempt.start()
    engine.upgrade(0, 1)
    await settle()
    assert attempt.state is MigrationState.DONE
    assert not outcome.done()

    engine.succeed()
    conn = await outcome
    assert conn.version == 1


async def test_failed_migration_closes_late_handle():
    engine = ScriptedEngine()
    gate = asyncio.Event()

    async def fails_later(ctx):
        await gate.wait()
        raise RuntimeError("late failure")

    attempt = _OpenAttempt(engine, "scripted", OpenOptions(2, {2: fails_later}).validate())
    outcome = attempt.start()
    engine.upgrade(1, 2)
    engine.succeed()
    gate.set()

    with pytest.raises(MigrationError):
        await outcome
    assert engine.tx.aborted
    assert engine.db.closed
    assert attempt.state is MigrationState.FAILED


async def test_engine_error_resolves_once():
    engine = ScriptedEngine()
    attempt = _OpenAttempt(engine, "scripted", OpenOptions(1).validate())
    outcome = attempt.start()

    first = IndexedDBRequestError("quota", name="QuotaExceededError")
    engine.fail(first)
    engine.fail(IndexedDBRequestError("second"))
    engine.succeed()

    with pytest.raises(IndexedDBRequestError) as excinfo:
        await outcome
    assert excinfo.value is first
    assert engine.request.result.closed, "a late handle is closed"


async def test_success_without_upgrade_resolves_immediately():
    engine = ScriptedEngine()
    attempt = _OpenAttempt(engine, "scripted", OpenOptions(1).validate())
    outcome = attempt.start()
    engine.succeed()
    assert outcome.done()
    assert attempt.state is MigrationState.NOT_STARTED
    assert isinstance(outcome.result(), Connection)


async def test_late_upgrade_after_blocked_is_aborted():
    engine = ScriptedEngine()
    attempt = _OpenAttempt(engine, "scripted", OpenOptions(2).validate())
    outcome = attempt.start()
    engine.request.on_blocked(type("Event", (), {"old_version": 1, "new_version": 2})())

    with pytest.raises(DatabaseBlockedError):
        await outcome

    assert engine.upgrade(1, 2) is None
    assert engine.tx.aborted
    engine.succeed()
    assert engine.db.closed
