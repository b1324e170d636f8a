"""Pytest fixtures for scheduling tests.

Several "processes" are simulated inside one test process: each scheduler or
lease gets its own fake pid, and ``alive_pids`` decides which of them the
liveness probe reports as running.  Removing a pid from the set is how a test
kills a process.
"""

from dataclasses import dataclass, field

import pytest

from pulse.core.scheduling import CheckExecutor, HeartbeatScheduler, LeaseLock

PID_A = 1001
PID_B = 1002
PID_C = 1003


class RecordingSink:
    """ActionSink that remembers every payload it is offered."""

    name = "recording"

    def __init__(self, accept: bool = True, error: Exception | None = None):
        self.accept = accept
        self.error = error
        self.payloads = []

    def dispatch(self, payload) -> bool:
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return self.accept


@dataclass
class FakeReminder:
    id: str
    text: str
    priority: str = "normal"
    tags: list = field(default_factory=list)

    def to_dict(self):
        return {"id": self.id, "text": self.text}


@dataclass
class FakeTask:
    id: str
    description: str
    priority: str = "normal"
    tags: list = field(default_factory=list)
    due: str | None = None

    def to_dict(self):
        return {"id": self.id, "description": self.description}


class StubStore:
    """TaskStore returning fixed lists."""

    def __init__(self, due=None, pending=None, error: Exception | None = None):
        self.due = list(due or [])
        self.pending = list(pending or [])
        self.error = error

    def list_due(self, now_ms):
        if self.error is not None:
            raise self.error
        return self.due

    def list_pending(self):
        return self.pending


@pytest.fixture
def alive_pids():
    """Pids the fake liveness probe reports as running."""
    return {PID_A, PID_B, PID_C}


@pytest.fixture
def pid_probe(alive_pids):
    return lambda pid: pid in alive_pids


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def busy_store():
    """A store that always has one pending task, so checks dispatch."""
    return StubStore(pending=[FakeTask("t1", "write report")])


@pytest.fixture
def make_lease(paths, pid_probe):
    """Factory: ``make_lease(pid)`` -> LeaseLock on the shared lease path."""

    def _make(pid: int, **kwargs) -> LeaseLock:
        kwargs.setdefault("stale_ms", 90_000)
        return LeaseLock(paths.lease, pid=pid, host_id="test-host", pid_alive=pid_probe, **kwargs)

    return _make


@pytest.fixture
def make_scheduler(paths, clock, pid_probe, busy_store):
    """Factory: ``make_scheduler(pid, sink=..., store=...)`` -> HeartbeatScheduler."""

    def _make(pid: int, sink=None, store=None, **kwargs) -> HeartbeatScheduler:
        executor = CheckExecutor(
            store=store if store is not None else busy_store,
            sink=sink if sink is not None else RecordingSink(),
        )
        return HeartbeatScheduler(
            paths,
            executor,
            clock=clock,
            pid=pid,
            host_id="test-host",
            pid_alive=pid_probe,
            nonce=f"nonce-{pid}",
            **kwargs,
        )

    return _make
