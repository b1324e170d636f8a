"""Persisted heartbeat schedule state.

The leader owns the whole record.  Any other process may only rewrite the
settings subset (``enabled``, ``intervalMs``, ``pinnedModel``), and only when
the existing file parses, so leader-owned fields (``lastCheckAt``,
``nextCheckAt``, ``checkCount``) are never stomped by a follower.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from pulse.core.errors import InvalidModelError
from pulse.core.fs import finite_int, read_json, write_json_atomic
from pulse.core.scheduling.channels import SettingsRecord, normalize_model
from pulse.core.scheduling.intervals import DEFAULT_INTERVAL_MS, normalize_interval

logger = logging.getLogger(__name__)


@dataclass
class SchedulerState:
    """Schedule bookkeeping for the heartbeat."""

    enabled: bool = True
    interval_ms: int = DEFAULT_INTERVAL_MS
    last_check_at: int | None = None
    next_check_at: int | None = None
    check_count: int = 0
    pinned_model: str | None = None

    @property
    def active(self) -> bool:
        return self.enabled and self.interval_ms > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "intervalMs": self.interval_ms,
            "lastCheckAt": self.last_check_at,
            "nextCheckAt": self.next_check_at,
            "checkCount": self.check_count,
            "pinnedModel": self.pinned_model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SchedulerState:
        """Lenient parse: every unusable field falls back to its default."""
        state = cls()
        if not isinstance(data, dict):
            return state
        if isinstance(data.get("enabled"), bool):
            state.enabled = data["enabled"]
        if "intervalMs" in data:
            state.interval_ms = normalize_interval(data["intervalMs"])
        state.last_check_at = finite_int(data.get("lastCheckAt"))
        state.next_check_at = finite_int(data.get("nextCheckAt"))
        count = finite_int(data.get("checkCount"))
        if count is not None and count >= 0:
            state.check_count = count
        try:
            state.pinned_model = normalize_model(data.get("pinnedModel"))
        except InvalidModelError:
            state.pinned_model = None
        return state

    def with_settings(self, settings: SettingsRecord) -> SchedulerState:
        """Copy with the user-controlled fields taken from ``settings``."""
        return replace(
            self,
            enabled=settings.enabled,
            interval_ms=settings.interval_ms,
            pinned_model=settings.pinned_model,
        )

    def as_settings(self) -> SettingsRecord:
        return SettingsRecord(
            enabled=self.enabled,
            interval_ms=self.interval_ms,
            pinned_model=self.pinned_model,
        )

    def fingerprint(self) -> tuple[bool, int, str | None]:
        return (self.enabled, self.interval_ms, self.pinned_model)


class StateStore:
    """Reads and writes ``heartbeat.state.json``."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> SchedulerState:
        return SchedulerState.from_dict(read_json(self.path))

    def save_full(self, state: SchedulerState) -> bool:
        """Leader-only: write every field."""
        return write_json_atomic(self.path, state.to_dict())

    def save_settings(self, state: SchedulerState) -> bool:
        """Non-leader write of the settings subset.

        Returns False without writing when the existing file is present but
        unparseable.
        """
        if self.path.exists():
            base = read_json(self.path)
            if base is None:
                logger.warning(f"Not overwriting unparseable state file {self.path}")
                return False
        else:
            base = {}
        merged = {
            "enabled": state.enabled,
            "intervalMs": state.interval_ms,
            "lastCheckAt": base.get("lastCheckAt"),
            "nextCheckAt": base.get("nextCheckAt"),
            "checkCount": base.get("checkCount", 0),
            "pinnedModel": state.pinned_model,
        }
        return write_json_atomic(self.path, merged)


__all__ = [
    "SchedulerState",
    "StateStore",
]
