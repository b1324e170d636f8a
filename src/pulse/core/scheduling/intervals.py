"""Heartbeat interval parsing, formatting and bounds.

Intervals are stored as integer milliseconds.  ``0`` is the "disabled"
sentinel; anything else must sit in ``[5m, 24h]``.  User input is rejected
when out of range; values already on disk are normalized to the default.
"""

from __future__ import annotations

import re

from pulse.core.errors import InvalidIntervalError
from pulse.core.fs import finite_int

MINUTE_MS = 60_000
HOUR_MS = 60 * MINUTE_MS

MIN_INTERVAL_MS = 5 * MINUTE_MS
MAX_INTERVAL_MS = 24 * HOUR_MS
DEFAULT_INTERVAL_MS = 30 * MINUTE_MS
MIN_REARM_MS = 1_000

_INTERVAL_RE = re.compile(
    r"^(\d+)\s*(m|min|mins|minute|minutes|h|hr|hrs|hour|hours)?$", re.IGNORECASE
)


def parse_interval(value: str | int) -> int:
    """Parse ``"30m"``, ``"2h"``, ``"45"`` (minutes) or ``"0"`` into milliseconds.

    Integers are taken as milliseconds already.

    Raises:
        InvalidIntervalError: If the text does not match the interval grammar.
    """
    if isinstance(value, bool):
        raise InvalidIntervalError(value)
    if isinstance(value, int):
        if value < 0:
            raise InvalidIntervalError(value)
        return value

    match = _INTERVAL_RE.match(str(value).strip())
    if not match:
        raise InvalidIntervalError(value)
    amount = int(match.group(1))
    unit = (match.group(2) or "m").lower()
    if unit.startswith("h"):
        return amount * HOUR_MS
    return amount * MINUTE_MS


def validate_interval(interval_ms: int) -> int:
    """Return ``interval_ms`` unchanged if it is ``0`` or within bounds.

    Raises:
        InvalidIntervalError: For values outside ``[5m, 24h]``.
    """
    if interval_ms == 0:
        return 0
    if interval_ms < MIN_INTERVAL_MS or interval_ms > MAX_INTERVAL_MS:
        raise InvalidIntervalError(
            interval_ms,
            f"Interval {format_interval(interval_ms)} out of range "
            f"(min {format_interval(MIN_INTERVAL_MS)}, max {format_interval(MAX_INTERVAL_MS)})",
        )
    return interval_ms


def normalize_interval(value: object) -> int:
    """Coerce a persisted value into a usable interval (never raises)."""
    interval_ms = finite_int(value)
    if interval_ms is None:
        return DEFAULT_INTERVAL_MS
    if interval_ms == 0:
        return 0
    if interval_ms < MIN_INTERVAL_MS or interval_ms > MAX_INTERVAL_MS:
        return DEFAULT_INTERVAL_MS
    return interval_ms


def format_interval(interval_ms: int) -> str:
    """Render ``1800000`` as ``"30m"`` and ``7200000`` as ``"2h"``."""
    if interval_ms <= 0:
        return "off"
    if interval_ms >= HOUR_MS:
        hours = interval_ms / HOUR_MS
        return f"{hours:g}h"
    return f"{max(1, round(interval_ms / MINUTE_MS))}m"


__all__ = [
    "MINUTE_MS",
    "HOUR_MS",
    "MIN_INTERVAL_MS",
    "MAX_INTERVAL_MS",
    "DEFAULT_INTERVAL_MS",
    "MIN_REARM_MS",
    "parse_interval",
    "validate_interval",
    "normalize_interval",
    "format_interval",
]
