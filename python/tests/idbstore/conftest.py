# -*- encoding: utf-8 -*-
import pytest

from idbstore import MemoryEngine, Orchestrator, ui_log

from base_fixtures import fill_base_connection, open_base_connection


@pytest.fixture(autouse=True)
def log_entries():
    """Capture ui_log entries instead of printing them."""
    entries = []
    ui_log.set_sinks(entries.append, entries.clear)
    yield entries
    ui_log.clear_sinks()
    ui_log.set_level("warn")


@pytest.fixture
def engine():
    return MemoryEngine()


@pytest.fixture
def orchestrator(engine):
    return Orchestrator(engine)


@pytest.fixture
async def conn(orchestrator):
    connection = await open_base_connection(orchestrator)
    yield connection
    connection.close()


@pytest.fixture
async def filled(conn):
    await fill_base_connection(conn)
    return conn
