"""
hio_bridge.py - hio scheduling for idbstore

WebDoist wraps hio's Doist so doers run cooperatively on an asyncio loop
(Pyodide's webloop in the browser, the default loop under CPython).
OpenDoer runs one orchestrated open as a Doer, for applications that drive
their startup from a hio scheduler.
"""

import asyncio

from hio.base import doing

from . import ui_log


class WebDoist:
    """
    asyncio-friendly wrapper around hio.Doist.

    Uses asyncio.sleep() instead of time.sleep() to yield to the event loop
    between scheduling cycles.
    """

    def __init__(self, real=True, limit=None, doers=None, tock=0.03125):
        """
        Args:
            real: If True, wait one tock between cycles.
                  If False, run as fast as possible (still yields to the loop).
            limit: Maximum run time in seconds. None means no limit.
            doers: List of Doer instances to schedule.
            tock: Time increment per cycle in seconds (default 1/32 second).
        """
        # inner Doist runs with real=False, timing is done here
        self.doist = doing.Doist(real=False, doers=doers, tock=tock, limit=limit)
        self.real = real
        self.limit = limit
        self.tock = tock
        self._running = False
        self._stop_requested = False

    async def do(self, doers=None, limit=None):
        """
        Run the scheduler until every doer is done, the limit passes or
        ``stop()`` is called.

        Args:
            doers: Optional list of doers replacing the current ones
            limit: Optional time limit override
        """
        self._running = True
        self._stop_requested = False

        if doers is not None:
            self.doist.doers = list(doers)
            self.doist.deeds.clear()

        if limit is not None:
            self.limit = limit
            self.doist.limit = limit

        loop = asyncio.get_running_loop()
        start_time = loop.time()

        try:
            self.doist.enter()

            while self.doist.deeds and not self._stop_requested:
                self.doist.recur()
                await asyncio.sleep(self.tock if self.real else 0)

                if self.limit is not None and loop.time() - start_time >= self.limit:
                    ui_log.warn(f"WebDoist stopped at its {self.limit}s limit")
                    break

            self.doist.done = True

        except Exception:
            self.doist.done = False
            raise

        finally:
            self.doist.exit()
            self._running = False

    def stop(self):
        """Request the scheduler to stop after the current cycle."""
        self._stop_requested = True

    @property
    def running(self):
        return self._running

    @property
    def tyme(self):
        return self.doist.tyme

    @property
    def done(self):
        return self.doist.done


class OpenDoer(doing.Doer):
    """
    Doer that opens a database through an Orchestrator.

    Once ``done`` is True, ``connection`` holds the open Connection or
    ``error`` the exception the open failed with.

    Usage:
        doer = OpenDoer(Orchestrator(engine), "app", version=2, migration=plan, tock=0.0)
        await WebDoist(doers=[doer], tock=0.01, limit=10.0).do()
        conn = doer.connection
    """

    def __init__(self, orchestrator, name, version=None, migration=None, on_blocked=None, **kwa):
        super().__init__(**kwa)
        self.orchestrator = orchestrator
        self.name = name
        self.options = dict(version=version, migration=migration, on_blocked=on_blocked)
        self.connection = None
        self.error = None
        self._task = None

    def enter(self, **kwa):
        self.connection = None
        self.error = None
        self._task = asyncio.ensure_future(self.orchestrator.open(self.name, **self.options))

    def recur(self, tyme):
        if self._task is None or not self._task.done():
            return False
        if self._task.cancelled():
            self.error = asyncio.CancelledError(f"open of {self.name} cancelled")
        elif self._task.exception() is not None:
            self.error = self._task.exception()
            ui_log.fail(f"OpenDoer {self.name}: {self.error}")
        else:
            self.connection = self._task.result()
        return True

    def exit(self):
        if self._task is not None and not self._task.done():
            self._task.cancel()
