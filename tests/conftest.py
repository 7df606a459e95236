"""
Pytest configuration and fixtures.

Shared fixtures for all tests. The watchdog loop is driven by a fake
clock and a scripted monitor, so minutes of watchdog time run instantly.
"""

import os
import shutil
import tempfile
import time
from pathlib import Path
from unittest.mock import Mock

import pytest

from deadman.controller import ResourceController, ResourceState
from deadman.errors import TransientControllerError
from deadman.monitor import MonitorError
from deadman.record import RecordStore

# Keep real credentials and webhooks out of tests
os.environ.pop("SLACK_WEBHOOK_URL", None)
os.environ.pop("DEADMAN_CONFIG", None)

FAKE_PID = 4242


class HaltLoop(Exception):
    """Raised by test hooks to break out of a watchdog loop."""


class FakeClock:
    """Wall clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float):
        self.now = start
        self.sleeps: list[float] = []
        self.on_sleep = None

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep:
            self.on_sleep(seconds)


class FakeController(ResourceController):
    """Records every call together with the fake time it happened at."""

    def __init__(self, clock=None, state=ResourceState.RUNNING, authorized=True):
        self.clock = clock
        self.state = state
        self.authorized = authorized
        self.failures = 0
        self.results: list[ResourceState] = []
        self.calls: list[tuple[str, str, float]] = []

    def _record(self, action, resource_id):
        self.calls.append((action, resource_id, self.clock() if self.clock else 0.0))

    def actions(self, action: str) -> list[float]:
        return [t for a, _, t in self.calls if a == action]

    def describe(self, resource_id, profile=None):
        self._record("describe", resource_id)
        return self.state

    def stop(self, resource_id, profile=None):
        return self._change("stop", resource_id, ResourceState.STOPPED)

    def terminate(self, resource_id, profile=None):
        return self._change("terminate", resource_id, ResourceState.SHUTTING_DOWN)

    def dry_run_authorized(self, action, resource_id, profile=None):
        self._record(f"dry_run_{action}", resource_id)
        return self.authorized

    def _change(self, action, resource_id, new_state):
        self._record(action, resource_id)
        if self.failures:
            self.failures -= 1
            raise TransientControllerError(f"{action} failed")
        if self.results:
            return self.results.pop(0)
        self.state = new_state
        return new_state


class ScriptedMonitor:
    """
    Stand-in for RecordMonitor.

    wait() returns True at once if woken since the last clear(); otherwise
    it calls on_wait(timeout) when set, or advances the clock by timeout.
    """

    def __init__(self, clock: FakeClock, max_waits: int = 10_000):
        self.clock = clock
        self.max_waits = max_waits
        self.on_wait = None
        self.waits: list[float] = []
        self.fail_next = 0
        self.restarts = 0
        self.started = False
        self._woken = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def restart(self):
        self.restarts += 1

    def clear(self):
        self._woken = False

    def wake(self):
        self._woken = True

    def wait(self, timeout):
        if self.fail_next:
            self.fail_next -= 1
            raise MonitorError("spurious wait failure")
        self.waits.append(timeout)
        if len(self.waits) > self.max_waits:
            raise HaltLoop("too many waits")
        if self._woken:
            return True
        if self.on_wait:
            return bool(self.on_wait(timeout))
        self.clock.advance(timeout)
        return False


def reset_at(store: RecordStore, resource_id: str, timestamp: float) -> None:
    """Reset a record at a given (fake) time."""
    os.utime(store.path_for(resource_id), (timestamp, timestamp))


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def store(temp_dir):
    return RecordStore(temp_dir / "records")


@pytest.fixture
def clock():
    return FakeClock(float(int(time.time())))


@pytest.fixture
def controller(clock):
    return FakeController(clock=clock)


@pytest.fixture
def monitor(clock):
    return ScriptedMonitor(clock)


@pytest.fixture
def alerter():
    return Mock()
