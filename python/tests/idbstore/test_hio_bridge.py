# -*- encoding: utf-8 -*-
"""
test_hio_bridge.py - opening a database from a hio scheduler.
"""

import asyncio

from idbstore import MigrationError, Orchestrator
from idbstore.hio_bridge import OpenDoer, WebDoist


def create_notes(context):
    context.create_collection("notes", key_path="id")


async def test_open_doer_connects(engine):
    doer = OpenDoer(Orchestrator(engine), "doer_db", version=1, migration={1: create_notes}, tock=0.0)
    doist = WebDoist(real=False, doers=[doer], tock=0.01, limit=5.0)
    await doist.do()

    assert doist.done
    assert not doist.running
    assert doer.error is None
    assert doer.connection.version == 1
    assert doer.connection.collection_names == ["notes"]
    doer.connection.close()


async def test_open_doer_reports_failure(engine, log_entries):
    def broken(context):
        raise RuntimeError("no schema")

    doer = OpenDoer(Orchestrator(engine), "doer_db", version=1, migration={1: broken}, tock=0.0)
    await WebDoist(real=False, doers=[doer], tock=0.01, limit=5.0).do()

    assert doer.connection is None
    assert isinstance(doer.error, MigrationError)
    assert any(e["css"] == "fail" and "doer_db" in e["msg"] for e in log_entries)


class _Stalled:
    """Orchestrator whose open never settles."""

    async def open(self, name, **options):
        await asyncio.sleep(60)


async def test_limit_stops_and_cancels_open(log_entries):
    doer = OpenDoer(_Stalled(), "slow", tock=0.0)
    doist = WebDoist(real=False, doers=[doer], tock=0.01, limit=0.05)
    await doist.do()

    assert doer.connection is None
    assert any("limit" in e["msg"] for e in log_entries)
    await asyncio.sleep(0.01)
    assert doer._task.cancelled()


async def test_stop_request():
    doer = OpenDoer(_Stalled(), "slow", tock=0.0)
    doist = WebDoist(real=True, doers=[doer], tock=0.01)
    run = asyncio.ensure_future(doist.do())
    await asyncio.sleep(0.03)
    assert doist.running
    doist.stop()
    await run
    assert not doist.running
