"""Clock and path contracts shared by the scheduling components.

┌──────────────────────────────────────────────────────────────────────────────┐
│  TWO CLOCKS                                                                   │
│                                                                               │
│  Wall clock (epoch-ms)            Monotonic clock (seconds)                   │
│  ─────────────────────            ─────────────────────────                   │
│  written to disk: lease           never leaves the process:                   │
│  refreshedAt, lastCheckAt,        runner wait deadlines,                      │
│  nextCheckAt, marker mtimes       armed-timer deadline                        │
│                                                                               │
│  Every component takes a Clock instead of calling time.time() directly,      │
│  so tests drive staleness and timer expiry without sleeping.                 │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

PidProbe = Callable[[int], bool]


@runtime_checkable
class Clock(Protocol):
    """Source of wall-clock and monotonic time."""

    def now_ms(self) -> int:
        """Epoch milliseconds (persisted values)."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds (in-process deadlines)."""
        ...


class SystemClock:
    """Real clock backed by :mod:`time`."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    def monotonic(self) -> float:
        return time.monotonic()


class FakeClock:
    """Manually advanced clock for tests and simulations.

    Both clocks move together; ``advance`` is thread-safe so a test can drive
    a scheduler owned by another thread.

    Example:
        >>> clock = FakeClock(start_ms=1_000_000)
        >>> clock.advance(seconds=90)
        >>> clock.now_ms()
        1090000
    """

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self._lock = threading.Lock()
        self._now_ms = int(start_ms)
        self._mono = 1000.0

    def now_ms(self) -> int:
        with self._lock:
            return self._now_ms

    def monotonic(self) -> float:
        with self._lock:
            return self._mono

    def advance(self, *, ms: int = 0, seconds: float = 0.0, minutes: float = 0.0) -> int:
        """Move both clocks forward; returns the new ``now_ms``."""
        delta_ms = int(ms + seconds * 1000 + minutes * 60_000)
        with self._lock:
            self._now_ms += delta_ms
            self._mono += delta_ms / 1000.0
            return self._now_ms


@dataclass(frozen=True)
class StatePaths:
    """All files the heartbeat uses inside one state directory."""

    root: Path
    lease: Path
    state: Path
    settings: Path
    reload_marker: Path
    trigger_marker: Path
    outbox: Path
    inbox: Path

    @classmethod
    def from_dir(cls, root: Path | str) -> StatePaths:
        root = Path(root).expanduser()
        return cls(
            root=root,
            lease=root / "heartbeat.lock.json",
            state=root / "heartbeat.state.json",
            settings=root / "heartbeat.settings.json",
            reload_marker=root / "heartbeat.reload",
            trigger_marker=root / "heartbeat.trigger",
            outbox=root / "outbox",
            inbox=root / "inbox",
        )


__all__ = [
    "Clock",
    "SystemClock",
    "FakeClock",
    "PidProbe",
    "StatePaths",
]
