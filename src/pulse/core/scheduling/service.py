"""Heartbeat scheduler - per-process leadership and check-in state machine.

Manifesto:
    Any number of processes may open the same state directory; exactly one
    of them (the lease holder) fires check-ins.  Everyone else is a
    follower that watches the lease and takes over when it goes stale.
    User controls (enable, interval, model, trigger) work from any process:
    a follower writes the settings channel or the trigger marker and the
    leader picks the change up on its next tick.

    The scheduler owns no thread.  A driver (``HeartbeatRunner``) calls
    :meth:`HeartbeatScheduler.tick` every refresh interval and
    :meth:`HeartbeatScheduler.fire_due_timer` when the armed deadline
    passes, which keeps the whole state machine testable with a fake clock.

Tags:
    pulse-core, scheduling, leader-election, state-machine, heartbeat

Doc-Types:
    api-reference, architecture-diagram


┌──────────────────────────────────────────────────────────────────────────────┐
│  HEARTBEAT STATE MACHINE                                                      │
│                                                                               │
│                 acquire ok                   timer due / trigger              │
│   ┌──────────┐ ───────────►  ┌─────────────┐ ──────────────► ┌─────────────┐ │
│   │ FOLLOWER │               │ LEADER_IDLE │                 │  LEADER_    │ │
│   │          │ ◄───────────  │ (timer set) │ ◄────────────── │  EXECUTING  │ │
│   └──────────┘ refresh fails └─────────────┘   always re-arm └─────────────┘ │
│        ▲       (timer cancelled first)                                        │
│        │                                                                      │
│   lease stale ──► acquire                                                     │
│                                                                               │
│   DISABLED is reported whenever enabled=false or intervalMs=0; a disabled    │
│   leader keeps its lease but never arms a timer.                             │
│                                                                               │
│  Leader tick:                                                                 │
│   1. refresh lease            (fail → step down, cancel timer, stop)         │
│   2. reload marker moved?     (→ read settings, compare fingerprint, re-arm) │
│   3. trigger marker newer?    (→ execute now, forced)                        │
│                                                                               │
│  Execute:                                                                     │
│   verify lease → lastCheckAt/checkCount → persist → executor.run → re-arm    │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pulse.core.errors import ConfigError, StorageError
from pulse.core.fs import pid_alive
from pulse.core.scheduling.channels import SettingsChannel, SettingsRecord, TriggerChannel
from pulse.core.scheduling.executor import CheckExecutor, CheckResult
from pulse.core.scheduling.intervals import (
    DEFAULT_INTERVAL_MS,
    MIN_REARM_MS,
    format_interval,
    parse_interval,
)
from pulse.core.scheduling.lease import DEFAULT_STALE_MS, LeaseLock
from pulse.core.scheduling.protocol import Clock, PidProbe, StatePaths, SystemClock
from pulse.core.scheduling.state import SchedulerState, StateStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MS = 15_000


class SchedulerRole(str, Enum):
    """Reported role of one scheduler instance."""

    DISABLED = "disabled"
    FOLLOWER = "follower"
    LEADER_IDLE = "leader_idle"
    LEADER_EXECUTING = "leader_executing"


class TriggerOutcome(str, Enum):
    """What :meth:`HeartbeatScheduler.trigger` did."""

    EXECUTED = "executed"  # this process is the leader and ran the check
    QUEUED = "queued"  # follower left a trigger marker for the leader
    FAILED = "failed"  # marker could not be written


@dataclass
class TriggerReceipt:
    """Result of a manual trigger request."""

    outcome: TriggerOutcome
    leader_pid: int | None = None
    result: CheckResult | None = None

    @property
    def message(self) -> str:
        if self.outcome is TriggerOutcome.EXECUTED:
            return "Check-in triggered"
        if self.outcome is TriggerOutcome.QUEUED:
            suffix = f" (leader pid {self.leader_pid})" if self.leader_pid else ""
            return f"Requested check-in{suffix}"
        return "Could not request check-in"


@dataclass
class SchedulerStats:
    """Counters for one scheduler instance."""

    tick_count: int = 0
    checks_executed: int = 0
    checks_skipped: int = 0
    checks_failed: int = 0
    triggers_consumed: int = 0
    leadership_acquired: int = 0
    leadership_lost: int = 0
    last_tick_at: int | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "checks_executed": self.checks_executed,
            "checks_skipped": self.checks_skipped,
            "checks_failed": self.checks_failed,
            "triggers_consumed": self.triggers_consumed,
            "leadership_acquired": self.leadership_acquired,
            "leadership_lost": self.leadership_lost,
            "last_tick_at": self.last_tick_at,
            "last_error": self.last_error,
        }


@dataclass
class SchedulerStatus:
    """Snapshot returned by :meth:`HeartbeatScheduler.status`."""

    role: SchedulerRole
    pid: int
    is_leader: bool
    leader_pid: int | None
    enabled: bool
    interval_ms: int
    pinned_model: str | None
    last_check_at: int | None
    next_check_at: int | None
    check_count: int
    timer_armed: bool = False
    stats: SchedulerStats = field(default_factory=SchedulerStats)

    @property
    def interval(self) -> str:
        return format_interval(self.interval_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "pid": self.pid,
            "is_leader": self.is_leader,
            "leader_pid": self.leader_pid,
            "enabled": self.enabled,
            "interval_ms": self.interval_ms,
            "interval": self.interval,
            "pinned_model": self.pinned_model,
            "last_check_at": self.last_check_at,
            "next_check_at": self.next_check_at,
            "check_count": self.check_count,
            "timer_armed": self.timer_armed,
            "stats": self.stats.to_dict(),
        }


def compute_next_check(
    state: SchedulerState,
    now_ms: int,
    *,
    reenabled: bool = False,
) -> int:
    """Next check time for an active schedule.

    The schedule is anchored on ``lastCheckAt`` so restarts and takeovers
    keep the cadence; an overdue check runs one second from now.  After a
    re-enable, a ``lastCheckAt`` more than one interval old is ignored and
    the cadence restarts from ``now``.
    """
    last = state.last_check_at
    base = last if last is not None and last <= now_ms else now_ms
    if reenabled and now_ms - base >= state.interval_ms:
        base = now_ms
    next_at = base + state.interval_ms
    if next_at <= now_ms:
        next_at = now_ms + MIN_REARM_MS
    return next_at


class HeartbeatScheduler:
    """Leader-elected heartbeat scheduler, one per process.

    Example:
        >>> paths = StatePaths.from_dir("~/.pulse")
        >>> scheduler = HeartbeatScheduler(paths, executor)
        >>> scheduler.start()
        <SchedulerRole.LEADER_IDLE: 'leader_idle'>
        >>> scheduler.tick()              # every refresh interval
        >>> scheduler.fire_due_timer()    # when timer_deadline() passes
        >>> scheduler.stop()
    """

    def __init__(
        self,
        paths: StatePaths,
        executor: CheckExecutor,
        *,
        clock: Clock | None = None,
        stale_ms: int = DEFAULT_STALE_MS,
        refresh_interval_ms: int = DEFAULT_REFRESH_MS,
        default_interval_ms: int = DEFAULT_INTERVAL_MS,
        pid: int | None = None,
        host_id: str | None = None,
        pid_alive: PidProbe = pid_alive,
        nonce: str | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            paths: State directory layout
            executor: Runs check-ins on behalf of the leader
            clock: Wall and monotonic clock (real clock by default)
            stale_ms: Lease staleness threshold
            refresh_interval_ms: Expected tick period; must be shorter than
                ``stale_ms`` or a live leader would look stale between ticks
            default_interval_ms: Interval used before any state exists
            pid: Process identity (tests simulate several processes)
            host_id: Host identity written into the lease
            pid_alive: Liveness probe for lease holders
            nonce: Fencing token (random by default)

        Raises:
            ConfigError: ``stale_ms`` does not exceed ``refresh_interval_ms``
        """
        if stale_ms <= refresh_interval_ms:
            raise ConfigError(
                f"stale_ms ({stale_ms}) must exceed refresh_interval_ms ({refresh_interval_ms})"
            )
        self.paths = paths
        self.executor = executor
        self.clock = clock or SystemClock()
        self.refresh_interval_ms = int(refresh_interval_ms)
        self.default_interval_ms = int(default_interval_ms)
        self.lease = LeaseLock(
            paths.lease, stale_ms=stale_ms, pid=pid, host_id=host_id, pid_alive=pid_alive
        )
        self.pid = self.lease.pid
        self.settings_channel = SettingsChannel(paths.settings, paths.reload_marker, pid=self.pid)
        self.trigger_channel = TriggerChannel(paths.trigger_marker)
        self.state_store = StateStore(paths.state)
        self.nonce = nonce or secrets.token_hex(8)

        self._lock = threading.RLock()
        self._state = SchedulerState(interval_ms=self.default_interval_ms)
        self._started = False
        self._is_leader = False
        self._executing = False
        self._leader_pid: int | None = None
        self._timer_deadline: float | None = None
        self._settings_fingerprint: tuple[bool, int, str | None] | None = None
        self._settings_watermark: int | None = None
        self._trigger_watermark = 0
        self._stats = SchedulerStats()

    # === Properties ===

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def role(self) -> SchedulerRole:
        if not self._state.active:
            return SchedulerRole.DISABLED
        if not self._is_leader:
            return SchedulerRole.FOLLOWER
        if self._executing:
            return SchedulerRole.LEADER_EXECUTING
        return SchedulerRole.LEADER_IDLE

    def timer_deadline(self) -> float | None:
        """Monotonic deadline of the armed check timer, None when disarmed."""
        return self._timer_deadline

    # === Lifecycle ===

    def start(self) -> SchedulerRole:
        """Load local state and contend for leadership once."""
        with self._lock:
            if self._started:
                logger.warning("HeartbeatScheduler already started")
                return self.role
            self._started = True
            self._load_local()
            now = self.clock.now_ms()
            result = self.lease.acquire(self.nonce, now)
            self._leader_pid = result.owner_pid
            if result.ok:
                self._become_leader(now)
            else:
                logger.info(f"Following heartbeat leader pid={result.owner_pid} (pid={self.pid})")
            return self.role

    def stop(self) -> None:
        """Cancel the timer and release the lease if held."""
        with self._lock:
            self._cancel_timer()
            if self._is_leader:
                if self.lease.release(self.nonce):
                    logger.info(f"Released heartbeat leadership (pid={self.pid})")
                self._is_leader = False
                self._leader_pid = None
            self._started = False

    # === Driver entry points ===

    def tick(self) -> None:
        """One refresh tick: keep or contend for the lease, then poll channels."""
        with self._lock:
            if not self._started:
                return
            now = self.clock.now_ms()
            self._stats.tick_count += 1
            self._stats.last_tick_at = now
            if self._is_leader:
                self._leader_tick(now)
            else:
                self._follower_tick(now)

    def fire_due_timer(self) -> CheckResult | None:
        """Run the scheduled check if the armed deadline has passed."""
        with self._lock:
            deadline = self._timer_deadline
            if deadline is None or self.clock.monotonic() < deadline:
                return None
            self._timer_deadline = None
            if not self._verify_leadership():
                return None
            return self._execute(self.clock.now_ms(), forced=False)

    # === Control operations ===

    def enable(self) -> SchedulerStatus:
        """Turn the heartbeat on (restoring the default interval if it was 0)."""
        patch: dict[str, Any] = {"enabled": True}
        with self._lock:
            self._refresh_view()
            if self._state.interval_ms == 0:
                patch["interval_ms"] = self.default_interval_ms
            return self._apply_settings(patch)

    def disable(self) -> SchedulerStatus:
        return self._apply_settings({"enabled": False})

    def set_interval(self, value: int | str) -> SchedulerStatus:
        """Set the interval (``"30m"``, ``"2h"``, ms int); ``0`` disables.

        Raises:
            InvalidIntervalError: Unparseable or outside ``[5m, 24h]``.
        """
        interval_ms = parse_interval(value)
        patch: dict[str, Any] = {"interval_ms": interval_ms}
        if interval_ms == 0:
            patch["enabled"] = False
        return self._apply_settings(patch)

    def set_model(self, model: str | None) -> SchedulerStatus:
        """Pin a ``provider/model-id``; ``"auto"`` or None unpins.

        Raises:
            InvalidModelError: Malformed model string.
        """
        return self._apply_settings({"pinned_model": model})

    def trigger(self) -> TriggerReceipt:
        """Run a check now (leader) or ask the leader to (follower)."""
        with self._lock:
            now = self.clock.now_ms()
            if self._is_leader and self._verify_leadership():
                result = self._execute(now, forced=True)
                return TriggerReceipt(TriggerOutcome.EXECUTED, leader_pid=self.pid, result=result)
            leader_pid = self.lease.holder_pid(now) or self._leader_pid
            if self.trigger_channel.request(now):
                logger.info(f"Queued check-in trigger for leader pid={leader_pid}")
                return TriggerReceipt(TriggerOutcome.QUEUED, leader_pid=leader_pid)
            return TriggerReceipt(TriggerOutcome.FAILED, leader_pid=leader_pid)

    def status(self) -> SchedulerStatus:
        """Current view; a non-leader re-reads the shared files first."""
        with self._lock:
            if not self._is_leader:
                self._refresh_view()
                self._leader_pid = self.lease.holder_pid(self.clock.now_ms())
            state = self._state
            return SchedulerStatus(
                role=self.role,
                pid=self.pid,
                is_leader=self._is_leader,
                leader_pid=self.pid if self._is_leader else self._leader_pid,
                enabled=state.enabled,
                interval_ms=state.interval_ms,
                pinned_model=state.pinned_model,
                last_check_at=state.last_check_at,
                next_check_at=state.next_check_at if state.active else None,
                check_count=state.check_count,
                timer_armed=self._timer_deadline is not None,
                stats=self._stats,
            )

    def get_stats(self) -> SchedulerStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()

    # === Internals ===

    def _load_local(self) -> None:
        """Replace the in-memory state with disk state merged with settings."""
        state = self.state_store.load()
        if not self.state_store.path.exists():
            state.interval_ms = self.default_interval_ms
        settings = self.settings_channel.read()
        if settings is not None:
            state = state.with_settings(settings)
        self._state = state

    def _refresh_view(self) -> None:
        if not self._is_leader:
            self._load_local()

    def _become_leader(self, now: int) -> None:
        self._is_leader = True
        self._leader_pid = self.pid
        self._stats.leadership_acquired += 1
        self._load_local()
        self._settings_fingerprint = self._state.fingerprint()
        self._settings_watermark = self.settings_channel.marker_mtime()
        logger.info(
            f"Acquired heartbeat leadership (pid={self.pid}, "
            f"interval={format_interval(self._state.interval_ms)})"
        )
        self._schedule_next(now)

    def _step_down(self, reason: str) -> None:
        """Lose leadership; the timer is cancelled before anything else."""
        self._cancel_timer()
        self._is_leader = False
        self._executing = False
        self._leader_pid = self.lease.holder_pid()
        self._stats.leadership_lost += 1
        logger.warning(
            f"Lost heartbeat leadership ({reason}); now following pid={self._leader_pid}"
        )

    def _verify_leadership(self) -> bool:
        if not self._is_leader:
            return False
        if not self.lease.is_owner(self.nonce):
            self._step_down("lease no longer ours")
            return False
        return True

    def _cancel_timer(self) -> None:
        self._timer_deadline = None

    def _arm_timer(self, next_at: int, now: int) -> None:
        delay_ms = max(MIN_REARM_MS, next_at - now)
        self._timer_deadline = self.clock.monotonic() + delay_ms / 1000.0

    def _leader_tick(self, now: int) -> None:
        if not self.lease.refresh(self.nonce, now):
            self._step_down("refresh failed")
            return

        self._sync_settings(now)

        triggered, self._trigger_watermark = self.trigger_channel.consume(self._trigger_watermark)
        if triggered:
            self._stats.triggers_consumed += 1
            logger.info("Consumed cross-process trigger")
            self._execute(now, forced=True)

    def _follower_tick(self, now: int) -> None:
        record, mtime = self.lease.read_with_mtime()
        self._leader_pid = record.pid if record is not None else None
        if mtime is not None and not self.lease.is_stale(record, now, mtime_ms=mtime):
            return
        result = self.lease.acquire(self.nonce, now)
        self._leader_pid = result.owner_pid
        if result.ok:
            self._become_leader(now)

    def _sync_settings(self, now: int) -> None:
        """Apply settings written by other processes since the last tick."""
        changed, self._settings_watermark = self.settings_channel.changed_since(
            self._settings_watermark
        )
        if changed:
            settings = self.settings_channel.read()
            if settings is not None:
                self._apply_record(settings, now)
                return
        if self._timer_deadline is None and self._state.active:
            self._schedule_next(now)

    def _apply_record(self, settings: SettingsRecord, now: int) -> None:
        before = self._settings_fingerprint or self._state.fingerprint()
        was_active = self._state.active
        self._state = self._state.with_settings(settings)
        after = self._state.fingerprint()
        self._settings_fingerprint = after
        if before != after:
            logger.info(
                f"Heartbeat settings changed: enabled={settings.enabled} "
                f"interval={format_interval(settings.interval_ms)} model={settings.pinned_model}"
            )
            self._schedule_next(now, reenabled=not was_active and self._state.active)
        elif self._timer_deadline is None and self._state.active:
            self._schedule_next(now)

    def _apply_settings(self, patch: dict[str, Any]) -> SchedulerStatus:
        """Validate, publish and apply a settings change from this process."""
        with self._lock:
            self._refresh_view()
            now = self.clock.now_ms()
            was_active = self._state.active
            record = self.settings_channel.write(patch, now, base=self._state.as_settings())
            if record is None:
                raise StorageError("Could not write heartbeat settings").with_context(
                    path=str(self.settings_channel.path)
                )
            self._state = self._state.with_settings(record)
            self._settings_fingerprint = self._state.fingerprint()
            self._settings_watermark = self.settings_channel.marker_mtime()
            self._schedule_next(now, reenabled=not was_active and self._state.active)
            return self.status()

    def _schedule_next(self, now: int, *, reenabled: bool = False) -> None:
        """Recompute ``nextCheckAt``, persist, and (leader only) arm the timer."""
        self._cancel_timer()
        if self._is_leader:
            self._verify_leadership()

        state = self._state
        if not state.active:
            state.next_check_at = None
            self._persist()
            return

        if not self._is_leader:
            state.next_check_at = None
            self.state_store.save_settings(state)
            return

        next_at = compute_next_check(state, now, reenabled=reenabled)
        state.next_check_at = next_at
        self._arm_timer(next_at, now)
        self._persist()

    def _persist(self) -> bool:
        if self._is_leader:
            return self.state_store.save_full(self._state)
        return self.state_store.save_settings(self._state)

    def _execute(self, now: int, *, forced: bool) -> CheckResult | None:
        if not self._verify_leadership():
            return None

        self._cancel_timer()
        self._executing = True
        state = self._state
        state.last_check_at = now
        state.check_count += 1
        self._persist()

        result: CheckResult | None = None
        try:
            result = self.executor.run(
                state.check_count, now, forced=forced, pinned_model=state.pinned_model
            )
        except Exception as e:
            self._stats.last_error = str(e)
            logger.exception(f"Check #{state.check_count} failed: {e}")
        finally:
            self._executing = False

        if result is None or not result.ok:
            self._stats.checks_failed += 1
            if result is not None:
                self._stats.last_error = result.error
        elif result.skipped:
            self._stats.checks_skipped += 1
        else:
            self._stats.checks_executed += 1

        self._schedule_next(self.clock.now_ms())
        return result


__all__ = [
    "DEFAULT_REFRESH_MS",
    "SchedulerRole",
    "TriggerOutcome",
    "TriggerReceipt",
    "SchedulerStats",
    "SchedulerStatus",
    "HeartbeatScheduler",
    "compute_next_check",
]
