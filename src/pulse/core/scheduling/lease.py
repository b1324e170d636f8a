"""Filesystem lease lock for heartbeat leadership.

Manifesto:
    Exactly one process on the host may fire the heartbeat.  Ownership is a
    small JSON file whose creation is atomic (hard link of a fully written
    temp file) and whose liveness is proven by periodic refreshes.  A holder
    that crashes stops refreshing or stops existing; either way the lease
    goes stale and the next contender breaks it.  A random *nonce* fences
    every refresh and release, so a process that lost its lease can never
    touch its successor's file.

Tags:
    pulse-core, scheduling, lease, leader-election, fencing, staleness

Doc-Types:
    api-reference, architecture-diagram


    Lease Lifecycle::

        acquire() ──link ok──► HELD ──refresh() every tick──► HELD
            │                   │                               │
            │ EEXIST            │ release()/stop                │ holder dies or
            ▼                   ▼                               ▼ stops refreshing
        read holder         (file gone)                      STALE
            │                                                   │
            ├─ fresh → fail(owner_pid)        contender: delete + retry once
            └─ stale → delete, retry once  ◄────────────────────┘
"""

from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pulse.core.fs import (
    atomic_write_text,
    create_exclusive_text,
    file_mtime_ms,
    finite_int,
    pid_alive,
    read_json,
    remove_quietly,
)
from pulse.core.scheduling.protocol import PidProbe

logger = logging.getLogger(__name__)

DEFAULT_STALE_MS = 90_000
MAX_ACQUIRE_ATTEMPTS = 2


@dataclass(frozen=True)
class LeaseRecord:
    """On-disk lease content."""

    pid: int
    nonce: str
    acquired_at: int
    refreshed_at: int
    host_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "nonce": self.nonce,
            "acquiredAt": self.acquired_at,
            "refreshedAt": self.refreshed_at,
            "hostId": self.host_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LeaseRecord | None:
        """Parse a record; None when any required field is missing or mistyped."""
        if not isinstance(data, dict):
            return None
        pid = data.get("pid")
        nonce = data.get("nonce")
        acquired = data.get("acquiredAt")
        refreshed = data.get("refreshedAt")
        if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
            return None
        if not isinstance(nonce, str) or not nonce:
            return None
        refreshed_at = finite_int(refreshed)
        if refreshed_at is None:
            return None
        acquired_at = finite_int(acquired)
        if acquired_at is None:
            acquired_at = refreshed_at
        host = data.get("hostId")
        return cls(
            pid=pid,
            nonce=nonce,
            acquired_at=acquired_at,
            refreshed_at=refreshed_at,
            host_id=host if isinstance(host, str) else "",
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


@dataclass(frozen=True)
class AcquireResult:
    """Outcome of :meth:`LeaseLock.acquire`.

    ``owner_pid`` is the pid holding the lease afterwards: ours on success,
    the observed holder on contention, None when the holder is unknown
    (unparseable file or I/O error).
    """

    ok: bool
    owner_pid: int | None = None

    def __bool__(self) -> bool:
        return self.ok


class LeaseLock:
    """Exclusive, time-bounded ownership of one lease file.

    Example:
        >>> lock = LeaseLock(paths.lease)
        >>> nonce = secrets.token_hex(8)
        >>> result = lock.acquire(nonce, clock.now_ms())
        >>> if result.ok:
        ...     lock.refresh(nonce, clock.now_ms())   # every refresh tick
        ...     lock.release(nonce)                   # on shutdown
        ... else:
        ...     print(f"held by pid {result.owner_pid}")
    """

    def __init__(
        self,
        path: Path,
        *,
        stale_ms: int = DEFAULT_STALE_MS,
        pid: int | None = None,
        host_id: str | None = None,
        pid_alive: PidProbe = pid_alive,
    ) -> None:
        """Initialize the lock.

        Args:
            path: Canonical lease file path
            stale_ms: Default staleness threshold for :meth:`acquire`
            pid: Identity written into the lease (defaults to ``os.getpid()``)
            host_id: Host identity (defaults to the hostname)
            pid_alive: Liveness probe for holder pids on this host
        """
        self.path = Path(path)
        self.stale_ms = int(stale_ms)
        self.pid = pid if pid is not None else os.getpid()
        self.host_id = host_id if host_id is not None else socket.gethostname()
        self._pid_alive = pid_alive

    # === Reads ===

    def read(self) -> LeaseRecord | None:
        """Current record, or None when absent or unparseable."""
        return LeaseRecord.from_dict(read_json(self.path))

    def read_with_mtime(self) -> tuple[LeaseRecord | None, int | None]:
        """Record plus file mtime; ``(None, None)`` means the file is absent."""
        mtime = file_mtime_ms(self.path)
        if mtime is None:
            return None, None
        return self.read(), mtime

    def is_stale(
        self,
        record: LeaseRecord | None,
        now_ms: int,
        stale_ms: int | None = None,
        mtime_ms: int | None = None,
    ) -> bool:
        """Decide whether a lease may be broken.

        A parseable record is stale when its holder is dead (same host only)
        or its last refresh is older than ``stale_ms``.  An unparseable file
        is stale only once its mtime is older than ``stale_ms``; until then
        it counts as held.
        """
        threshold = self.stale_ms if stale_ms is None else int(stale_ms)
        if record is None:
            return mtime_ms is not None and now_ms - mtime_ms > threshold
        same_host = not record.host_id or record.host_id == self.host_id
        if same_host and not self._pid_alive(record.pid):
            return True
        return now_ms - record.refreshed_at > threshold

    def holder_pid(self, now_ms: int | None = None) -> int | None:
        """Pid of the holder; with ``now_ms`` only if the lease is still valid."""
        record, mtime = self.read_with_mtime()
        if record is None:
            return None
        if now_ms is not None and self.is_stale(record, now_ms, mtime_ms=mtime):
            return None
        return record.pid

    def is_owner(self, nonce: str) -> bool:
        record = self.read()
        return record is not None and record.pid == self.pid and record.nonce == nonce

    # === Mutations ===

    def acquire(self, nonce: str, now_ms: int, stale_ms: int | None = None) -> AcquireResult:
        """Try to become the holder.

        Args:
            nonce: Fencing token for this holder term
            now_ms: Current wall-clock epoch-ms
            stale_ms: Override the staleness threshold for this call

        Returns:
            AcquireResult; ``ok`` is False on contention and on any I/O error.
        """
        record = LeaseRecord(
            pid=self.pid,
            nonce=nonce,
            acquired_at=now_ms,
            refreshed_at=now_ms,
            host_id=self.host_id,
        )
        payload = record.to_json()
        owner_pid: int | None = None

        for attempt in range(MAX_ACQUIRE_ATTEMPTS):
            created = create_exclusive_text(self.path, payload)
            if created.ok:
                logger.debug(f"Acquired lease {self.path} (pid={self.pid})")
                return AcquireResult(ok=True, owner_pid=self.pid)
            if not created.already_exists:
                return AcquireResult(ok=False, owner_pid=None)

            existing, mtime = self.read_with_mtime()
            if existing is None and mtime is None:
                # released between link() and read; next attempt may win
                continue
            owner_pid = existing.pid if existing is not None else None
            if existing is not None and existing.pid == self.pid and existing.nonce == nonce:
                return AcquireResult(ok=True, owner_pid=self.pid)
            if not self.is_stale(existing, now_ms, stale_ms, mtime):
                return AcquireResult(ok=False, owner_pid=owner_pid)
            if attempt + 1 < MAX_ACQUIRE_ATTEMPTS:
                self._break_stale(existing, mtime)

        return AcquireResult(ok=False, owner_pid=owner_pid)

    def _break_stale(self, observed: LeaseRecord | None, observed_mtime: int | None) -> None:
        """Delete a stale lease unless it changed since it was judged stale."""
        current, mtime = self.read_with_mtime()
        if current != observed or mtime != observed_mtime:
            logger.debug(f"Lease {self.path} changed while breaking it, leaving it")
            return
        if remove_quietly(self.path):
            holder = observed.pid if observed is not None else "unknown"
            logger.info(f"Broke stale lease {self.path} (holder pid={holder})")

    def refresh(self, nonce: str, now_ms: int) -> bool:
        """Extend the lease; False if it is no longer ours or cannot be written."""
        record = self.read()
        if record is None or record.pid != self.pid or record.nonce != nonce:
            return False
        updated = LeaseRecord(
            pid=record.pid,
            nonce=record.nonce,
            acquired_at=record.acquired_at,
            refreshed_at=now_ms,
            host_id=record.host_id,
        )
        return atomic_write_text(self.path, updated.to_json())

    def release(self, nonce: str) -> bool:
        """Delete the lease if it still belongs to this holder term."""
        if not self.is_owner(nonce):
            return False
        if remove_quietly(self.path):
            logger.debug(f"Released lease {self.path} (pid={self.pid})")
            return True
        return False


__all__ = [
    "DEFAULT_STALE_MS",
    "LeaseRecord",
    "AcquireResult",
    "LeaseLock",
]
