"""JSON-lines brain store adapter.

The brain is an append-only log: every line is one entry with an ``id`` and
a ``type``.  Reading folds the log so the last entry per id wins and a
``tombstone`` removes its target.  Only ``task`` and ``reminder`` entries
matter to the heartbeat; other types are skipped.

Example line::

    {"id": "r1", "type": "reminder", "text": "stand up", "enabled": true,
     "cadence": {"kind": "interval", "every": "2h"}, "priority": "normal",
     "tags": [], "last_run": null, "next_due": null}
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from pulse.core.errors import StorageError
from pulse.core.fs import finite_int, loads_strict

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"urgent": 0, "high": 1, "normal": 2, "low": 3}

_EVERY_RE = re.compile(r"^(\d+)\s*(m|min|minutes?|h|hr|hours?|d|days?)$", re.IGNORECASE)
_DAILY_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def _priority(value: Any) -> str:
    return value if value in PRIORITY_ORDER else "normal"


def _tags(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(t) for t in value]


def parse_every(text: str) -> int | None:
    """``"90m"`` / ``"2h"`` / ``"1d"`` to milliseconds, None if unparseable."""
    match = _EVERY_RE.match(str(text).strip())
    if not match:
        return None
    amount = int(match.group(1))
    unit = match.group(2).lower()[0]
    if unit == "d":
        return amount * 86_400_000
    if unit == "h":
        return amount * 3_600_000
    return amount * 60_000


def parse_timestamp_ms(value: Any) -> int | None:
    """ISO-8601 string (naive means UTC) or epoch-ms number to epoch-ms."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return finite_int(value)
    try:
        parsed = datetime.fromisoformat(str(value).strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp() * 1000)


def _utc(now_ms: int) -> datetime:
    return datetime.fromtimestamp(now_ms / 1000, tz=UTC)


@dataclass
class Reminder:
    """A recurring nudge surfaced by the check-in when due."""

    id: str
    text: str
    enabled: bool = True
    cadence_kind: str = "interval"
    every_ms: int | None = None
    daily_at: str | None = None
    priority: str = "normal"
    tags: list[str] = field(default_factory=list)
    last_run_ms: int | None = None
    next_due_ms: int | None = None

    def is_due(self, now_ms: int) -> bool:
        if not self.enabled:
            return False
        if self.next_due_ms is not None:
            return self.next_due_ms <= now_ms
        if self.cadence_kind == "daily":
            if not self.daily_at:
                return False
            hour, minute = (int(p) for p in self.daily_at.split(":"))
            now = _utc(now_ms)
            slot = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
            if slot > now:
                slot -= timedelta(days=1)
            slot_ms = int(slot.timestamp() * 1000)
            return self.last_run_ms is None or self.last_run_ms < slot_ms
        if self.every_ms is None:
            return False
        return self.last_run_ms is None or self.last_run_ms + self.every_ms <= now_ms

    def to_dict(self) -> dict[str, Any]:
        cadence: dict[str, Any]
        if self.cadence_kind == "daily":
            cadence = {"kind": "daily", "at": self.daily_at}
        else:
            cadence = {"kind": "interval", "every_ms": self.every_ms}
        return {
            "id": self.id,
            "text": self.text,
            "cadence": cadence,
            "priority": self.priority,
            "tags": list(self.tags),
            "last_run": self.last_run_ms,
        }

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> Reminder | None:
        text = entry.get("text")
        cadence = entry.get("cadence")
        if not isinstance(text, str) or not isinstance(cadence, dict):
            return None
        kind = cadence.get("kind")
        every_ms = None
        daily_at = None
        if kind == "interval":
            every_ms = parse_every(cadence.get("every", ""))
            if every_ms is None:
                return None
        elif kind == "daily":
            at = str(cadence.get("at", "")).strip()
            if not _DAILY_RE.match(at):
                return None
            daily_at = at
        else:
            return None
        return cls(
            id=str(entry["id"]),
            text=text,
            enabled=entry.get("enabled") is not False,
            cadence_kind=kind,
            every_ms=every_ms,
            daily_at=daily_at,
            priority=_priority(entry.get("priority")),
            tags=_tags(entry.get("tags")),
            last_run_ms=parse_timestamp_ms(entry.get("last_run")),
            next_due_ms=parse_timestamp_ms(entry.get("next_due")),
        )


@dataclass
class Task:
    """A pending to-do item."""

    id: str
    description: str
    status: str = "pending"
    priority: str = "normal"
    tags: list[str] = field(default_factory=list)
    due: str | None = None

    def is_overdue(self, today: str) -> bool:
        return self.due is not None and self.due < today

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "tags": list(self.tags),
            "due": self.due,
        }

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> Task | None:
        description = entry.get("description")
        if not isinstance(description, str):
            return None
        due = entry.get("due")
        return cls(
            id=str(entry["id"]),
            description=description,
            status=entry.get("status") if entry.get("status") in ("pending", "done") else "pending",
            priority=_priority(entry.get("priority")),
            tags=_tags(entry.get("tags")),
            due=str(due)[:10] if due else None,
        )


class JsonlBrainStore:
    """Task/reminder view over a brain JSONL file.

    A missing file is an empty brain.  Bad lines are skipped and counted;
    an unreadable file raises :class:`~pulse.core.errors.StorageError`.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.bad_lines = 0

    def _entries(self) -> list[dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Cannot read brain file: {e}", cause=e).with_context(
                path=str(self.path)
            ) from e

        entries: list[dict[str, Any]] = []
        self.bad_lines = 0
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                entry = loads_strict(line)
            except ValueError:
                self.bad_lines += 1
                continue
            if isinstance(entry, dict) and entry.get("id") is not None and entry.get("type"):
                entries.append(entry)
            else:
                self.bad_lines += 1
        if self.bad_lines:
            logger.debug(f"Skipped {self.bad_lines} bad lines in {self.path}")
        return entries

    def _fold(self) -> tuple[dict[str, Task], dict[str, Reminder]]:
        tasks: dict[str, Task] = {}
        reminders: dict[str, Reminder] = {}
        for entry in self._entries():
            kind = entry["type"]
            if kind == "tombstone":
                target = str(entry.get("target_id"))
                tasks.pop(target, None)
                reminders.pop(target, None)
            elif kind == "task":
                task = Task.from_entry(entry)
                if task is not None:
                    tasks[task.id] = task
            elif kind == "reminder":
                reminder = Reminder.from_entry(entry)
                if reminder is not None:
                    reminders[reminder.id] = reminder
        return tasks, reminders

    def list_due(self, now_ms: int) -> list[Reminder]:
        """Enabled reminders due at ``now_ms``, most urgent first."""
        _, reminders = self._fold()
        due = [r for r in reminders.values() if r.is_due(now_ms)]
        due.sort(key=lambda r: PRIORITY_ORDER[r.priority])
        return due

    def list_pending(self) -> list[Task]:
        """Pending tasks sorted urgent, high, normal, low (stable within a level)."""
        tasks, _ = self._fold()
        pending = [t for t in tasks.values() if t.status == "pending"]
        pending.sort(key=lambda t: PRIORITY_ORDER[t.priority])
        return pending


__all__ = [
    "PRIORITY_ORDER",
    "Reminder",
    "Task",
    "JsonlBrainStore",
    "parse_every",
    "parse_timestamp_ms",
]
