"""Cross-process signalling channels.

Manifesto:
    Followers cannot call into the leader; they can only leave files behind.
    Two channels cover everything a non-leader needs to say:

    - **SettingsChannel**: "the schedule changed".  Whole-file, last write
      wins, followed by a touch of the reload marker so the leader can
      detect change with one ``stat()`` per tick.
    - **TriggerChannel**: "run a check now".  A marker whose mtime is the
      request time; the leader consumes it by deletion and remembers the
      mtime as a watermark.

    Both are best effort.  Two racing writers lose one update; two racing
    triggers may collapse into one check.  Neither can corrupt a file.

Tags:
    pulse-core, scheduling, ipc, settings, trigger, markers

Doc-Types:
    api-reference
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from pulse.core.errors import InvalidModelError, PulseError, ValidationError
from pulse.core.fs import file_mtime_ms, read_json, touch_marker, write_json_atomic
from pulse.core.scheduling.intervals import DEFAULT_INTERVAL_MS, normalize_interval, validate_interval

logger = logging.getLogger(__name__)

AUTO_MODEL = "auto"
_MODEL_RE = re.compile(r"^[^/\s]+/[^\s]+$")


def normalize_model(value: str | None) -> str | None:
    """Validate a pinned model; ``None``, ``""`` and ``"auto"`` mean unpinned.

    Raises:
        InvalidModelError: If the value is not ``provider/model-id``.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidModelError(value)
    text = value.strip()
    if not text or text.lower() == AUTO_MODEL:
        return None
    if not _MODEL_RE.match(text):
        raise InvalidModelError(value)
    return text


class SettingsRecord(BaseModel):
    """User-controlled schedule settings, shared by every process.

    Validation happens here, at the write boundary: an out-of-range
    ``interval_ms`` raises :class:`~pulse.core.errors.InvalidIntervalError`
    and a malformed model raises :class:`~pulse.core.errors.InvalidModelError`.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    version: Literal[1] = 1
    enabled: bool = True
    interval_ms: int = Field(default=DEFAULT_INTERVAL_MS, alias="intervalMs")
    pinned_model: str | None = Field(default=None, alias="pinnedModel")
    updated_at: int = Field(default=0, alias="updatedAt")
    writer_pid: int = Field(default=0, alias="writerPid")

    @field_validator("interval_ms")
    @classmethod
    def _check_interval(cls, value: int) -> int:
        return validate_interval(value)

    @field_validator("pinned_model", mode="before")
    @classmethod
    def _check_model(cls, value: Any) -> str | None:
        return normalize_model(value)

    @property
    def active(self) -> bool:
        """True when the heartbeat should be scheduled at all."""
        return self.enabled and self.interval_ms > 0

    def fingerprint(self) -> tuple[bool, int, str | None]:
        return (self.enabled, self.interval_ms, self.pinned_model)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_disk(cls, data: dict[str, Any] | None) -> SettingsRecord | None:
        """Parse a persisted record, normalizing an out-of-range interval.

        Returns None for anything that cannot be salvaged.
        """
        if not isinstance(data, dict):
            return None
        data = dict(data)
        if "intervalMs" in data:
            data["intervalMs"] = normalize_interval(data["intervalMs"])
        if "pinnedModel" in data:
            try:
                data["pinnedModel"] = normalize_model(data["pinnedModel"])
            except InvalidModelError:
                data["pinnedModel"] = None
        try:
            return cls.model_validate(data)
        except (PydanticValidationError, PulseError) as e:
            logger.debug(f"Discarding unreadable settings record: {e}")
            return None


_PATCH_FIELDS = {"enabled", "interval_ms", "pinned_model"}


class SettingsChannel:
    """Whole-file settings record plus a reload marker."""

    def __init__(self, path: Path, reload_marker: Path, *, pid: int | None = None) -> None:
        self.path = Path(path)
        self.reload_marker = Path(reload_marker)
        self.pid = pid if pid is not None else os.getpid()

    def read(self) -> SettingsRecord | None:
        """Current record, or None when absent or corrupt."""
        return SettingsRecord.from_disk(read_json(self.path))

    def write(
        self,
        patch: dict[str, Any],
        now_ms: int,
        base: SettingsRecord | None = None,
    ) -> SettingsRecord | None:
        """Merge ``patch`` into the current record and publish it.

        Args:
            patch: Any of ``enabled``, ``interval_ms``, ``pinned_model``
            now_ms: Timestamp recorded as ``updatedAt``
            base: Record to patch when no settings file exists yet

        Returns:
            The published record, or None if it could not be written.

        Raises:
            InvalidIntervalError / InvalidModelError: For rejected values.
            ValidationError: For unknown patch keys or mistyped values.
        """
        unknown = set(patch) - _PATCH_FIELDS
        if unknown:
            raise ValidationError(f"Unknown settings fields: {sorted(unknown)}")

        current = self.read() or base or SettingsRecord()
        merged = {
            "enabled": current.enabled,
            "interval_ms": current.interval_ms,
            "pinned_model": current.pinned_model,
            **patch,
            "updated_at": now_ms,
            "writer_pid": self.pid,
        }
        try:
            record = SettingsRecord.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid settings: {e}", cause=e) from e

        if not write_json_atomic(self.path, record.to_dict()):
            return None
        touch_marker(self.reload_marker, now_ms)
        logger.debug(f"Published settings {record.fingerprint()} (pid={self.pid})")
        return record

    def marker_mtime(self) -> int | None:
        return file_mtime_ms(self.reload_marker)

    def changed_since(self, watermark: int | None) -> tuple[bool, int | None]:
        """Compare the reload marker to ``watermark``.

        Returns:
            ``(changed, current_mtime)``; a marker that appears for the first
            time, or whose mtime moved, counts as changed.
        """
        mtime = self.marker_mtime()
        if mtime is None:
            return False, watermark
        return mtime != watermark, mtime


class TriggerChannel:
    """Single-marker "run now" requests."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def request(self, now_ms: int) -> bool:
        """Leave a trigger marker stamped with ``now_ms``."""
        ok = touch_marker(self.path, now_ms, content=str(now_ms))
        if ok:
            logger.debug(f"Trigger requested at {now_ms}")
        return ok

    def pending(self, watermark: int) -> bool:
        mtime = file_mtime_ms(self.path)
        return mtime is not None and mtime > watermark

    def consume(self, watermark: int) -> tuple[bool, int]:
        """Consume a marker newer than ``watermark``.

        Returns:
            ``(triggered, next_watermark)``.  Missing markers, markers at or
            below the watermark and I/O errors all report not-triggered.  The
            watermark only moves once the marker is gone from disk.
        """
        mtime = file_mtime_ms(self.path)
        if mtime is None or mtime <= watermark:
            return False, watermark
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not consume trigger marker {self.path}: {e}")
            return False, watermark
        return True, mtime


__all__ = [
    "AUTO_MODEL",
    "normalize_model",
    "SettingsRecord",
    "SettingsChannel",
    "TriggerChannel",
]
