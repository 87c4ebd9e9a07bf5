"""
Pytest configuration for slidebox tests.

Provides deterministic stand-ins for the controller's concurrency seams:
- inline_executor: runs submitted work immediately on the calling thread
- deferred_executor: holds submitted work until the test releases it
- manual_timers: timer factory whose timers only fire when the test says so
- fake_clock: monotonic clock the test advances by hand
"""

from concurrent.futures import Future

import pytest


class InlineExecutor:
    """Executor that runs work synchronously."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


class DeferredExecutor(InlineExecutor):
    """Executor that queues work until run_next()/run_all() is called."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.jobs.append((future, fn, args, kwargs))
        return future

    def run_next(self):
        future, fn, args, kwargs = self.jobs.pop(0)
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)

    def run_all(self):
        while self.jobs:
            self.run_next()


class ManualTimer:
    """threading.Timer look-alike that never fires on its own."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def pending(self):
        return self.started and not self.cancelled and not self.fired

    def fire(self):
        self.fired = True
        self.function(*self.args, **self.kwargs)


class ManualTimers:
    """Timer factory that records every timer it creates."""

    def __init__(self):
        self.timers = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = ManualTimer(interval, function, args, kwargs)
        self.timers.append(timer)
        return timer

    def pending(self, handler_name=None):
        """Pending timers, optionally only those that will post the named handler."""
        result = []
        for timer in self.timers:
            if not timer.pending:
                continue
            if handler_name is not None:
                handler = timer.args[0] if timer.args else None
                if getattr(handler, "__name__", None) != handler_name:
                    continue
            result.append(timer)
        return result

    def fire_all(self, handler_name=None):
        fired = 0
        for timer in self.pending(handler_name):
            timer.fire()
            fired += 1
        return fired


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def deferred_executor():
    return DeferredExecutor()


@pytest.fixture
def manual_timers():
    return ManualTimers()


@pytest.fixture
def fake_clock():
    return FakeClock()
