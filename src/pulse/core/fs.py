"""Filesystem primitives for cross-process coordination.

Manifesto:
    The lease, the channels and the state file are all "a small JSON file
    that other processes may read at any instant".  A reader must never see
    a half-written file, and a creator must learn atomically whether it won.
    This module owns those two guarantees and nothing else:

    - ``atomic_write_text``: temp file in the same directory + ``os.replace``
    - ``create_exclusive_text``: temp file + ``os.link`` (fails with
      ``EEXIST`` when the target exists), so the canonical path only ever
      appears with its full content
    - ``touch_marker``: write a marker and pin its mtime to a caller-supplied
      epoch-ms, so injected clocks and mtime watermarks agree

    Every function returns a success value instead of raising; I/O errors are
    logged and reported as failure.  Callers treat failure as "try again next
    tick", never as success.

Guardrails:
    The hard-link trick assumes a local POSIX filesystem.  Some network
    filesystems do not implement ``link(2)`` atomically (or at all); there the
    lease degrades to "never acquired", which is safe but useless.  Pulse is
    meant for a single host's local state directory.

Tags:
    pulse-core, filesystem, atomic-write, exclusive-create, pid-liveness

Doc-Types:
    api-reference
"""

from __future__ import annotations

import errno
import json
import logging
import math
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

FILE_MODE = 0o600


@dataclass(frozen=True)
class CreateResult:
    """Outcome of :func:`create_exclusive_text`."""

    ok: bool
    error_code: int | None = None

    @property
    def already_exists(self) -> bool:
        return self.error_code == errno.EEXIST


def _temp_name(path: Path, tag: str) -> Path:
    return path.with_name(f"{path.name}.{tag}-{os.getpid()}-{secrets.token_hex(6)}")


def _write_file(path: Path, content: str) -> None:
    fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())


def remove_quietly(path: Path | None) -> bool:
    """Unlink ``path``; True if a file was removed."""
    if path is None:
        return False
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.warning(f"Could not remove {path}: {e}")
        return False


def atomic_write_text(path: Path, content: str) -> bool:
    """Replace ``path`` with ``content`` without an observable partial state.

    Returns:
        True on success, False on any I/O error (temp file cleaned up).
    """
    tmp: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_name(path, "tmp")
        _write_file(tmp, content)
        os.replace(tmp, path)
        tmp = None
        return True
    except OSError as e:
        logger.warning(f"Atomic write to {path} failed: {e}")
        return False
    finally:
        remove_quietly(tmp)


def create_exclusive_text(path: Path, content: str) -> CreateResult:
    """Create ``path`` with ``content`` only if it does not exist yet.

    The full payload is written to a unique temp file first and then hard
    linked into place, so a concurrent reader observes either "absent" or the
    complete file.
    """
    tmp: Path | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = _temp_name(path, "tmp-create")
        _write_file(tmp, content)
        os.link(tmp, path)
        return CreateResult(ok=True)
    except OSError as e:
        if e.errno != errno.EEXIST:
            logger.warning(f"Exclusive create of {path} failed: {e}")
        return CreateResult(ok=False, error_code=e.errno)
    finally:
        remove_quietly(tmp)


def write_json_atomic(path: Path, payload: dict[str, Any]) -> bool:
    """Serialize ``payload`` and :func:`atomic_write_text` it."""
    return atomic_write_text(path, json.dumps(payload, indent=2, sort_keys=False))


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} in JSON")


def loads_strict(raw: str) -> Any:
    """``json.loads`` that refuses NaN and Infinity.

    Raises:
        ValueError: malformed JSON or a non-finite constant
    """
    return json.loads(raw, parse_constant=_reject_constant)


def finite_int(value: Any) -> int | None:
    """Integer value of a JSON number; None for bools, non-numbers and inf/nan."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return int(value)


def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON object; None when absent, unreadable, corrupt or not an object."""
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not read {path}: {e}")
        return None
    try:
        data = loads_strict(raw.decode("utf-8"))
    except ValueError:
        logger.debug(f"Unparseable JSON in {path}")
        return None
    return data if isinstance(data, dict) else None


def file_mtime_ms(path: Path) -> int | None:
    """Modification time in epoch-ms, or None when the file is missing."""
    try:
        return int(path.stat().st_mtime_ns // 1_000_000)
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not stat {path}: {e}")
        return None


def touch_marker(path: Path, now_ms: int, content: str = "") -> bool:
    """Atomically (re)write a marker file and set its mtime to ``now_ms``."""
    if not atomic_write_text(path, content):
        return False
    try:
        ns = int(now_ms) * 1_000_000
        os.utime(path, ns=(ns, ns))
        return True
    except FileNotFoundError:
        # consumed by another process between replace and utime
        return True
    except OSError as e:
        logger.warning(f"Could not set mtime on {path}: {e}")
        return False


def pid_alive(pid: int | None) -> bool:
    """Check whether ``pid`` names a live process on this host.

    Signal 0 performs the permission and existence checks without
    delivering anything.  ``EPERM`` means the process exists but belongs to
    another user.
    """
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


__all__ = [
    "CreateResult",
    "atomic_write_text",
    "create_exclusive_text",
    "write_json_atomic",
    "read_json",
    "loads_strict",
    "finite_int",
    "file_mtime_ms",
    "touch_marker",
    "remove_quietly",
    "pid_alive",
]
