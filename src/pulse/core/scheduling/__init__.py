"""Heartbeat scheduling package for pulse-core.

Manifesto:
    A periodic check-in must fire exactly once per interval even when a
    dozen agent processes share one state directory.  That takes more than
    ``time.sleep()`` in a loop: it needs an elected leader (so two processes
    don't fire the same check), a way for followers to change settings or
    ask for a check-in, and takeover when the leader dies.  Everything runs
    over the local filesystem; there is no daemon to install.

┌──────────────────────────────────────────────────────────────────────────────┐
│  PULSE HEARTBEAT - Single-Leader Check-in Scheduling                         │
│                                                                               │
│  Quick Start:                                                                 │
│  ┌──────────────────────────────────────────────────────────────────────┐   │
│  │   from pulse.core.scheduling import HeartbeatRunner, create_scheduler│   │
│  │                                                                      │   │
│  │   scheduler = create_scheduler()          # from PULSE_* settings   │   │
│  │   runner = HeartbeatRunner(scheduler)                                │   │
│  │   runner.start()                                                     │   │
│  │                                                                      │   │
│  │   scheduler.set_interval("1h")            # from any process         │   │
│  │   scheduler.trigger()                     # leader runs, follower    │   │
│  │                                           # queues a marker          │   │
│  └──────────────────────────────────────────────────────────────────────┘   │
│                                                                               │
│  Architecture:                                                                │
│  ┌─────────────────────────────────────────────────────────────────────┐    │
│  │   ┌──────────────┐  tick() / fire_due_timer()  ┌──────────────────┐ │    │
│  │   │  Runner      │ ──────────────────────────► │ HeartbeatScheduler│ │    │
│  │   │ (monotonic)  │                             │                  │ │    │
│  │   └──────────────┘                             │ LeaseLock        │ │    │
│  │                                                │ SettingsChannel  │ │    │
│  │                                                │ TriggerChannel   │ │    │
│  │                                                │ StateStore       │ │    │
│  │                                                └────────┬─────────┘ │    │
│  │                                                         ▼           │    │
│  │                                                ┌──────────────────┐ │    │
│  │                                                │ CheckExecutor    │ │    │
│  │                                                │ store → payload  │ │    │
│  │                                                │ → sink/fallback  │ │    │
│  │                                                └──────────────────┘ │    │
│  └─────────────────────────────────────────────────────────────────────┘    │
└──────────────────────────────────────────────────────────────────────────────┘

Guardrails:
    ❌ Firing a check-in without re-reading the lease
    ✅ verify-before-act on every execute, arm and full state write
    ❌ Writing leader-owned state fields from a follower
    ✅ ``StateStore.save_settings()`` for non-leaders
    ❌ Constructing scheduler components individually
    ✅ ``create_scheduler(settings)`` factory function

Tags:
    pulse-core, scheduling, leader-election, lease, heartbeat, check-in

Doc-Types:
    package-overview, architecture-map, module-index
"""

from __future__ import annotations

from typing import TYPE_CHECKING

# Channels
from .channels import SettingsChannel, SettingsRecord, TriggerChannel

# Executor
from .executor import ActionSink, CheckExecutor, CheckPayload, CheckResult, TaskStore

# Health
from .health import HeartbeatHealthReport, check_heartbeat_health

# Intervals
from .intervals import format_interval, parse_interval, validate_interval

# Lease
from .lease import AcquireResult, LeaseLock, LeaseRecord

# Protocol
from .protocol import Clock, FakeClock, StatePaths, SystemClock

# Runner
from .runner import HeartbeatRunner

# Service
from .service import (
    HeartbeatScheduler,
    SchedulerRole,
    SchedulerStats,
    SchedulerStatus,
    TriggerOutcome,
    TriggerReceipt,
)

# Adapters
from .sinks import CommandSink, InboxSink, NullSink
from .state import SchedulerState, StateStore
from .store import JsonlBrainStore

if TYPE_CHECKING:
    from pulse.core.config import PulseSettings

__all__ = [
    # Protocol
    "Clock",
    "SystemClock",
    "FakeClock",
    "StatePaths",
    # Lease
    "LeaseLock",
    "LeaseRecord",
    "AcquireResult",
    # Channels
    "SettingsChannel",
    "SettingsRecord",
    "TriggerChannel",
    # State
    "SchedulerState",
    "StateStore",
    # Executor
    "CheckExecutor",
    "CheckPayload",
    "CheckResult",
    "TaskStore",
    "ActionSink",
    # Adapters
    "JsonlBrainStore",
    "CommandSink",
    "InboxSink",
    "NullSink",
    # Service
    "HeartbeatScheduler",
    "SchedulerRole",
    "SchedulerStats",
    "SchedulerStatus",
    "TriggerOutcome",
    "TriggerReceipt",
    # Runner
    "HeartbeatRunner",
    # Health
    "check_heartbeat_health",
    "HeartbeatHealthReport",
    # Intervals
    "parse_interval",
    "format_interval",
    "validate_interval",
    # Factories
    "create_executor",
    "create_scheduler",
]


def create_executor(settings: PulseSettings) -> CheckExecutor:
    """Wire the store, sinks and checklist described by ``settings``."""
    paths = settings.paths
    argv = settings.dispatch_argv()
    sink: ActionSink
    if argv:
        sink = CommandSink(argv, paths.outbox, timeout_seconds=settings.dispatch_timeout_seconds)
    else:
        sink = NullSink()
    store = JsonlBrainStore(settings.brain_path) if settings.brain_path else None
    return CheckExecutor(
        store=store,
        sink=sink,
        fallback=InboxSink(paths.inbox),
        checklist_paths=[paths.root / "HEARTBEAT.md"],
    )


def create_scheduler(
    settings: PulseSettings | None = None,
    *,
    executor: CheckExecutor | None = None,
    clock: Clock | None = None,
) -> HeartbeatScheduler:
    """Factory function to create a fully wired heartbeat scheduler.

    Args:
        settings: Configuration (``get_settings()`` when omitted)
        executor: Override the executor built from settings
        clock: Override the system clock

    Returns:
        Configured, not yet started HeartbeatScheduler

    Example:
        >>> scheduler = create_scheduler()
        >>> scheduler.status().role
        <SchedulerRole.FOLLOWER: 'follower'>
    """
    if settings is None:
        from pulse.core.config import get_settings

        settings = get_settings()

    return HeartbeatScheduler(
        settings.paths,
        executor or create_executor(settings),
        clock=clock,
        stale_ms=settings.stale_after_ms,
        refresh_interval_ms=settings.refresh_interval_ms,
        default_interval_ms=settings.default_interval_ms(),
    )
