"""Execution surfaces that accept check-in payloads.

``dispatch()`` answers one question: did the surface take the payload?  A
False return (or an exception) makes the executor try its fallback sink.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path

from pulse.core.errors import DispatchError
from pulse.core.fs import atomic_write_text, file_mtime_ms, remove_quietly
from pulse.core.scheduling.executor import CheckPayload

logger = logging.getLogger(__name__)


DEFAULT_OUTBOX_MAX_AGE_MS = 24 * 60 * 60 * 1000


def _payload_filename(payload: CheckPayload) -> str:
    return f"check-{payload.triggered_at}-{payload.check_number}.json"


class CommandSink:
    """Hand the payload to an external command.

    The payload is written to ``outbox_dir`` and its path appended to
    ``argv``.  The command counts as having accepted the payload if it
    starts and either exits 0 within ``timeout_seconds`` or is still
    running when the timeout expires.

    Payloads stay in the outbox for the command to read; files older than
    ``outbox_max_age_ms`` (measured against the new payload's timestamp)
    are pruned on every dispatch.  A payload whose command failed to start
    or exited non-zero is removed right away.
    """

    name = "command"

    def __init__(
        self,
        argv: list[str],
        outbox_dir: Path,
        timeout_seconds: float = 10.0,
        outbox_max_age_ms: int = DEFAULT_OUTBOX_MAX_AGE_MS,
    ) -> None:
        if not argv:
            raise DispatchError("CommandSink needs a non-empty argv")
        self.argv = list(argv)
        self.outbox_dir = Path(outbox_dir)
        self.timeout_seconds = timeout_seconds
        self.outbox_max_age_ms = outbox_max_age_ms

    def prune_outbox(self, now_ms: int) -> int:
        """Delete payload files last modified before ``now_ms - outbox_max_age_ms``."""
        cutoff = now_ms - self.outbox_max_age_ms
        removed = 0
        for old in self.outbox_dir.glob("check-*.json"):
            mtime = file_mtime_ms(old)
            if mtime is not None and mtime < cutoff and remove_quietly(old):
                removed += 1
        if removed:
            logger.debug(f"Pruned {removed} payload(s) from {self.outbox_dir}")
        return removed

    def dispatch(self, payload: CheckPayload) -> bool:
        self.prune_outbox(payload.triggered_at)
        path = self.outbox_dir / _payload_filename(payload)
        if not atomic_write_text(path, json.dumps(payload.to_dict(), indent=2)):
            return False

        try:
            proc = subprocess.Popen(
                [*self.argv, str(path)],
                stdin=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Could not start dispatch command {self.argv[0]!r}: {e}")
            remove_quietly(path)
            return False

        try:
            code = proc.wait(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.info(f"Dispatch command still running after {self.timeout_seconds}s (pid={proc.pid})")
            return True

        if code != 0:
            logger.warning(f"Dispatch command exited with {code}")
            remove_quietly(path)
            return False
        return True


class InboxSink:
    """Drop the payload into an inbox directory for later pickup."""

    name = "inbox"

    def __init__(self, inbox_dir: Path) -> None:
        self.inbox_dir = Path(inbox_dir)

    def dispatch(self, payload: CheckPayload) -> bool:
        path = self.inbox_dir / _payload_filename(payload)
        return atomic_write_text(path, json.dumps(payload.to_dict(), indent=2))


class NullSink:
    """Accepts nothing; stands in when no command is configured."""

    name = "null"

    def dispatch(self, payload: CheckPayload) -> bool:
        return False


__all__ = [
    "DEFAULT_OUTBOX_MAX_AGE_MS",
    "CommandSink",
    "InboxSink",
    "NullSink",
]
