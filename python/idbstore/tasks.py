# -*- encoding: utf-8 -*-
"""
Task runner: strict ``series`` and bounded-concurrency ``parallel`` execution
over named (mapping) or positional (sequence) task sets.

A task unit is either

- a callable taking one completion callback ``done(error, result)``, or
- a coroutine function taking no arguments.

Callback units are started synchronously, inside the completion callback of
the previous unit for ``series`` and as soon as a slot frees for
``parallel``. This matters for IndexedDB: a transaction auto-commits as soon
as control returns to the browser with no request pending, so a chain of
units operating on one transaction must not hop through the event loop
between steps.

Usage:
    results = await series({"a": unit_a, "b": unit_b})
    results = await parallel([unit_1, unit_2, unit_3], concurrency=2)
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Mapping
from functools import partial
from typing import Any, Callable, Optional, Union

from .errors import TaskError

Done = Callable[..., None]
TaskUnit = Callable[..., Any]
TaskSet = Union[Mapping, list, tuple]
Callback = Callable[[Optional[BaseException], Any], None]


def _is_named(tasks: TaskSet) -> bool:
    return isinstance(tasks, Mapping)


def _task_keys(tasks: TaskSet) -> list:
    return list(tasks.keys()) if _is_named(tasks) else list(range(len(tasks)))


def _empty_results(tasks: TaskSet) -> Union[dict, list]:
    # named results keep input order whatever the completion order
    return dict.fromkeys(tasks) if _is_named(tasks) else [None] * len(tasks)


def _as_exception(error: Any) -> BaseException:
    return error if isinstance(error, BaseException) else TaskError(error)


def start_unit(unit: TaskUnit, on_settled: Callable[[Any, Any], None]) -> None:
    """
    Start one task unit and report its outcome exactly once.

    ``on_settled(error, result)`` receives an exception instance or None.
    Extra calls of the unit's ``done`` callback are ignored, and a unit
    raising synchronously counts as failed.
    """
    settled = False

    def done(error: Any = None, result: Any = None) -> None:
        nonlocal settled
        if settled:
            return
        settled = True
        if error:
            on_settled(_as_exception(error), None)
        else:
            on_settled(None, result)

    if inspect.iscoroutinefunction(unit):

        def on_task(task: asyncio.Future) -> None:
            if task.cancelled():
                done(asyncio.CancelledError("task unit cancelled"))
            elif task.exception() is not None:
                done(task.exception())
            else:
                done(None, task.result())

        asyncio.ensure_future(unit()).add_done_callback(on_task)
        return

    try:
        unit(done)
    except Exception as ex:
        done(ex)


class _SeriesRun:
    """Drives one ``series`` call, trampolining units that settle inline."""

    def __init__(self, tasks: TaskSet, outcome: asyncio.Future):
        self.tasks = tasks
        self.keys = _task_keys(tasks)
        self.results = _empty_results(tasks)
        self.outcome = outcome
        self.position = 0
        self.looping = False
        self.waiting = False

    def advance(self) -> None:
        self.looping = True
        try:
            while self.position < len(self.keys) and not self.outcome.done():
                key = self.keys[self.position]
                self.waiting = True
                start_unit(self.tasks[key], partial(self.settle, key))
                if self.waiting:
                    return
        finally:
            self.looping = False
        if not self.outcome.done():
            self.outcome.set_result(self.results)

    def settle(self, key: Any, error: Optional[BaseException], result: Any) -> None:
        self.waiting = False
        if self.outcome.done():
            return
        if error is not None:
            self.outcome.set_exception(error)
            return
        self.results[key] = result
        self.position += 1
        if not self.looping:
            self.advance()


class _ParallelRun:
    """Drives one ``parallel`` call with at most ``concurrency`` units out."""

    def __init__(self, tasks: TaskSet, concurrency: int, outcome: asyncio.Future):
        self.tasks = tasks
        self.pending = deque(_task_keys(tasks))
        self.total = len(self.pending)
        self.results = _empty_results(tasks)
        self.concurrency = concurrency
        self.outcome = outcome
        self.running = 0
        self.finished = 0
        self.scheduling = False

    def schedule(self) -> None:
        if self.scheduling:
            return
        self.scheduling = True
        try:
            while (
                self.pending
                and not self.outcome.done()
                and (not self.concurrency or self.running < self.concurrency)
            ):
                key = self.pending.popleft()
                self.running += 1
                start_unit(self.tasks[key], partial(self.settle, key))
        finally:
            self.scheduling = False

    def settle(self, key: Any, error: Optional[BaseException], result: Any) -> None:
        self.running -= 1
        if self.outcome.done():
            # first error already won
            return
        if error is not None:
            self.outcome.set_exception(error)
            return
        self.results[key] = result
        self.finished += 1
        if self.finished == self.total:
            self.outcome.set_result(self.results)
        else:
            self.schedule()


async def _deliver(outcome: asyncio.Future, callback: Optional[Callback]) -> Any:
    if callback is None:
        return await outcome
    try:
        results = await outcome
    except Exception as ex:
        callback(ex, None)
        return None
    callback(None, results)
    return results


def start_series(tasks: TaskSet) -> asyncio.Future:
    """
    Start a ``series`` run now and return the future of its results.

    The first unit starts before this returns, so it can be called from a
    synchronous engine event handler.
    """
    outcome = asyncio.get_running_loop().create_future()
    if not len(tasks):
        outcome.set_result(_empty_results(tasks))
    else:
        _SeriesRun(tasks, outcome).advance()
    return outcome


def start_parallel(tasks: TaskSet, concurrency: int = 0) -> asyncio.Future:
    """Start a ``parallel`` run now and return the future of its results."""
    if concurrency < 0:
        raise ValueError(f"concurrency must be >= 0, got {concurrency}")
    outcome = asyncio.get_running_loop().create_future()
    if not len(tasks):
        outcome.set_result(_empty_results(tasks))
    else:
        _ParallelRun(tasks, concurrency, outcome).schedule()
    return outcome


async def series(tasks: TaskSet, callback: Optional[Callback] = None) -> Any:
    """
    Run task units one at a time, in input order.

    Named task sets run in mapping order and return a dict with the same
    keys; positional sets return a list with the same indexes. The first
    failure stops the run: no further unit starts and the error is raised
    (or passed to ``callback``).

    Args:
        tasks: Mapping or sequence of task units
        callback: Optional ``callback(error, results)`` invoked exactly once;
            when given, errors are reported through it instead of raised

    Returns:
        Results container shaped like ``tasks``
    """
    return await _deliver(start_series(tasks), callback)


async def parallel(
    tasks: TaskSet, concurrency: int = 0, callback: Optional[Callback] = None
) -> Any:
    """
    Run task units concurrently, at most ``concurrency`` at a time.

    ``concurrency`` of 0 means unbounded. On the first failure no new unit
    is started; units already running finish but their outcomes are
    discarded, and only the first error is raised. Results keep the input's
    keys regardless of completion order.

    Args:
        tasks: Mapping or sequence of task units
        concurrency: Maximum number of outstanding units, 0 for no limit
        callback: Optional ``callback(error, results)`` invoked exactly once

    Returns:
        Results container shaped like ``tasks``
    """
    return await _deliver(start_parallel(tasks, concurrency), callback)
