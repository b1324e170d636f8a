"""Check executor: gather due work, build the check-in payload, dispatch it.

Manifesto:
    The scheduler decides *when*; the executor decides *what*.  A check-in
    is only worth sending when something is due (or the user forced it),
    and a failing execution surface must never take the scheduler down
    with it.  ``CheckExecutor.run`` therefore never raises: every failure
    ends up in :class:`CheckResult`.

Tags:
    pulse-core, scheduling, executor, dispatch, reminders, tasks

Doc-Types:
    api-reference


    Execution Flow::

        run(check_number, now_ms, forced)
          │
          ├─ store.list_due(now) + store.list_pending() + checklist files
          │
          ├─ nothing due and not forced ──► CheckResult(skipped=True)
          │
          ├─ build CheckPayload (preamble + sections)
          │
          └─ sink.dispatch(payload) ── False/raise ──► fallback.dispatch(payload)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pulse.core.errors import ErrorCategory, categorize_error

logger = logging.getLogger(__name__)

CHECK_PREAMBLE = """\
Scheduled check-in. Work through the following:

1. Follow any checklist included below.
2. Handle the due reminders and pending tasks listed below, most urgent first.
3. Look at long-running operations you started earlier and report their state.
4. Raise anything that needs the user's attention.

If nothing needs attention, reply with exactly: CHECK_OK
Otherwise reply with the alert only (do NOT include CHECK_OK)."""


@runtime_checkable
class TaskStore(Protocol):
    """Read side of the memory/task store."""

    def list_due(self, now_ms: int) -> Sequence[Any]: ...

    def list_pending(self) -> Sequence[Any]: ...


@runtime_checkable
class ActionSink(Protocol):
    """Execution surface for check-in payloads."""

    name: str

    def dispatch(self, payload: CheckPayload) -> bool: ...


@dataclass
class CheckPayload:
    """Everything an execution surface needs to run one check-in."""

    check_number: int
    triggered_at: int
    forced: bool
    pinned_model: str | None
    prompt: str
    reminders: list[dict[str, Any]] = field(default_factory=list)
    tasks: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_number": self.check_number,
            "triggered_at": self.triggered_at,
            "forced": self.forced,
            "pinned_model": self.pinned_model,
            "prompt": self.prompt,
            "reminders": self.reminders,
            "tasks": self.tasks,
        }


@dataclass
class CheckResult:
    """Outcome of one :meth:`CheckExecutor.run`."""

    check_number: int
    executed_at: int
    forced: bool = False
    skipped: bool = False
    dispatched: bool = False
    sink: str | None = None
    due_count: int = 0
    pending_count: int = 0
    error: str | None = None
    error_category: ErrorCategory | None = None

    @property
    def ok(self) -> bool:
        return self.skipped or self.dispatched

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_number": self.check_number,
            "executed_at": self.executed_at,
            "forced": self.forced,
            "skipped": self.skipped,
            "dispatched": self.dispatched,
            "sink": self.sink,
            "due_count": self.due_count,
            "pending_count": self.pending_count,
            "error": self.error,
            "error_category": self.error_category.value if self.error_category else None,
        }


def _today(now_ms: int) -> str:
    return datetime.fromtimestamp(now_ms / 1000, tz=UTC).strftime("%Y-%m-%d")


def format_reminders(reminders: Sequence[Any]) -> str | None:
    if not reminders:
        return None
    lines = []
    for r in reminders:
        line = f"- [{r.id}] {r.text}"
        if r.priority != "normal":
            line += f" ({r.priority})"
        if r.tags:
            line += f" [{', '.join(r.tags)}]"
        lines.append(line)
    return f"Due reminders ({len(reminders)}):\n" + "\n".join(lines)


def format_tasks(tasks: Sequence[Any], now_ms: int) -> str | None:
    """Render pending tasks; callers pass them already priority-sorted."""
    if not tasks:
        return None
    today = _today(now_ms)
    lines = []
    for t in tasks:
        line = f"- [{t.id}] {t.description}"
        if t.priority != "normal":
            line += f" ({t.priority})"
        if t.due:
            if t.due < today:
                line += f" **OVERDUE** (due {t.due})"
            else:
                line += f" (due {t.due})"
        if t.tags:
            line += f" [{', '.join(t.tags)}]"
        lines.append(line)
    return f"Pending tasks ({len(tasks)}):\n" + "\n".join(lines)


def _as_dict(item: Any) -> dict[str, Any]:
    to_dict = getattr(item, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(item) if isinstance(item, dict) else {"value": str(item)}


class CheckExecutor:
    """Runs one check-in against a task store and an action sink.

    Example:
        >>> executor = CheckExecutor(
        ...     store=JsonlBrainStore(brain_path),
        ...     sink=CommandSink(["notify-agent"], paths.outbox),
        ...     fallback=InboxSink(paths.inbox),
        ... )
        >>> result = executor.run(check_number=1, now_ms=clock.now_ms())
    """

    def __init__(
        self,
        store: TaskStore | None,
        sink: ActionSink,
        fallback: ActionSink | None = None,
        *,
        checklist_paths: Sequence[Path] = (),
        preamble: str = CHECK_PREAMBLE,
    ) -> None:
        """Initialize the executor.

        Args:
            store: Source of due reminders and pending tasks (None: no store)
            sink: Primary execution surface
            fallback: Tried once when the primary sink refuses or raises
            checklist_paths: Markdown checklists; the first readable one is
                included in the prompt and counts as work to do
            preamble: Fixed opening of every check-in prompt
        """
        self.store = store
        self.sink = sink
        self.fallback = fallback
        self.checklist_paths = [Path(p) for p in checklist_paths]
        self.preamble = preamble

    def _read_checklist(self) -> str | None:
        for path in self.checklist_paths:
            try:
                text = path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Could not read checklist {path}: {e}")
                continue
            if text:
                return text
        return None

    def build_prompt(
        self,
        reminders: Sequence[Any],
        tasks: Sequence[Any],
        now_ms: int,
        checklist: str | None = None,
    ) -> str:
        sections = [self.preamble]
        if checklist:
            sections.append(f"Checklist:\n{checklist}")
        for section in (format_reminders(reminders), format_tasks(tasks, now_ms)):
            if section:
                sections.append(section)
        return "\n\n---\n\n".join(sections)

    def run(
        self,
        check_number: int,
        now_ms: int,
        *,
        forced: bool = False,
        pinned_model: str | None = None,
    ) -> CheckResult:
        """Execute one check-in. Never raises."""
        result = CheckResult(check_number=check_number, executed_at=now_ms, forced=forced)

        reminders: Sequence[Any] = []
        tasks: Sequence[Any] = []
        if self.store is not None:
            try:
                reminders = list(self.store.list_due(now_ms))
                tasks = list(self.store.list_pending())
            except Exception as e:
                result.error = f"store: {e}"
                result.error_category = categorize_error(e)
                logger.error(f"Task store read failed ({result.error_category.value}): {e}")
        checklist = self._read_checklist()
        result.due_count = len(reminders)
        result.pending_count = len(tasks)

        if not reminders and not tasks and not checklist and not forced:
            result.skipped = True
            logger.info(f"Check #{check_number} skipped (nothing due)")
            return result

        payload = CheckPayload(
            check_number=check_number,
            triggered_at=now_ms,
            forced=forced,
            pinned_model=pinned_model,
            prompt=self.build_prompt(reminders, tasks, now_ms, checklist),
            reminders=[_as_dict(r) for r in reminders],
            tasks=[_as_dict(t) for t in tasks],
        )

        for sink in (self.sink, self.fallback):
            if sink is None:
                continue
            try:
                accepted = sink.dispatch(payload)
            except Exception as e:
                result.error = f"{sink.name}: {e}"
                result.error_category = categorize_error(e)
                logger.error(
                    f"Sink {sink.name!r} raised during dispatch ({result.error_category.value}): {e}"
                )
                continue
            if accepted:
                result.dispatched = True
                result.sink = sink.name
                logger.info(
                    f"Check #{check_number} dispatched via {sink.name} "
                    f"(due={result.due_count}, pending={result.pending_count})"
                )
                return result
            logger.warning(f"Sink {sink.name!r} refused check #{check_number}")
            result.error = f"{sink.name}: refused"
            result.error_category = ErrorCategory.DISPATCH

        logger.error(f"Check #{check_number} could not be dispatched")
        return result


__all__ = [
    "CHECK_PREAMBLE",
    "TaskStore",
    "ActionSink",
    "CheckPayload",
    "CheckResult",
    "CheckExecutor",
    "format_reminders",
    "format_tasks",
]
