"""Heartbeat health checks.

┌──────────────────────────────────────────────────────────────────────────────┐
│  HEARTBEAT HEALTH MONITORING                                                  │
│                                                                               │
│  Health Checks:                                                               │
│  1. Runner: is the driver thread alive?                                      │
│  2. Lease:  does a valid (non-stale) lease exist?                            │
│  3. Ticks:  has this process ticked recently?                                │
│  4. Schedule: is an active schedule overdue?                                 │
│                                                                               │
│  A missing leader while the heartbeat is enabled is an error: nobody will    │
│  fire check-ins until some process takes over.                              │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .runner import HeartbeatRunner
    from .service import HeartbeatScheduler

logger = logging.getLogger(__name__)


@dataclass
class HeartbeatHealthReport:
    """Complete heartbeat health report."""

    healthy: bool
    checks: dict[str, bool] = field(default_factory=dict)
    lease: dict[str, Any] = field(default_factory=dict)
    schedule: dict[str, Any] = field(default_factory=dict)
    timing: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "healthy": self.healthy,
            "checks": self.checks,
            "lease": self.lease,
            "schedule": self.schedule,
            "timing": self.timing,
            "warnings": self.warnings,
            "errors": self.errors,
        }


def check_heartbeat_health(
    scheduler: HeartbeatScheduler,
    runner: HeartbeatRunner | None = None,
    overdue_grace_ms: int | None = None,
) -> HeartbeatHealthReport:
    """Heartbeat health check.

    Args:
        scheduler: Scheduler to inspect
        runner: Driver to inspect (skipped when None)
        overdue_grace_ms: How late a check may be before warning; defaults
            to the lease staleness threshold plus one refresh interval

    Returns:
        HeartbeatHealthReport with all checks
    """
    report = HeartbeatHealthReport(healthy=True)
    now = scheduler.clock.now_ms()
    grace = overdue_grace_ms
    if grace is None:
        grace = scheduler.lease.stale_ms + scheduler.refresh_interval_ms

    # === Runner ===
    if runner is not None:
        running = runner.is_running
        report.checks["runner_running"] = running
        if not running:
            report.errors.append("Heartbeat runner is not running")

    status = scheduler.status()

    # === Lease ===
    record, mtime = scheduler.lease.read_with_mtime()
    lease_valid = record is not None and not scheduler.lease.is_stale(record, now, mtime_ms=mtime)
    report.checks["lease_valid"] = lease_valid
    report.lease = {
        "holder_pid": record.pid if record is not None else None,
        "is_leader": status.is_leader,
        "refreshed_age_ms": now - record.refreshed_at if record is not None else None,
    }
    if status.enabled and status.interval_ms > 0 and not lease_valid:
        report.errors.append("Heartbeat is enabled but no process holds a valid lease")

    # === Ticks ===
    stats = scheduler.get_stats()
    report.timing["tick_count"] = stats.tick_count
    if stats.last_tick_at is not None:
        age = now - stats.last_tick_at
        report.timing["last_tick_age_ms"] = age
        tick_ok = age <= 2 * scheduler.refresh_interval_ms
        report.checks["tick_recent"] = tick_ok
        if not tick_ok:
            report.warnings.append(f"Last tick was {age / 1000:.1f}s ago")
    else:
        report.checks["tick_recent"] = False

    # === Schedule ===
    report.schedule = {
        "role": status.role.value,
        "interval": status.interval,
        "check_count": status.check_count,
        "last_check_at": status.last_check_at,
        "next_check_at": status.next_check_at,
        "checks_failed": stats.checks_failed,
    }
    if status.is_leader and status.next_check_at is not None:
        late = now - status.next_check_at
        on_time = late <= grace
        report.checks["schedule_on_time"] = on_time
        if not on_time:
            report.warnings.append(f"Next check is overdue by {late / 1000:.0f}s")

    total = stats.checks_executed + stats.checks_failed
    if total > 10 and stats.checks_failed / total > 0.1:
        report.warnings.append(
            f"High failure rate: {stats.checks_failed}/{total} "
            f"({stats.checks_failed / total * 100:.1f}%)"
        )

    if report.errors:
        report.healthy = False
    return report


__all__ = [
    "HeartbeatHealthReport",
    "check_heartbeat_health",
]
