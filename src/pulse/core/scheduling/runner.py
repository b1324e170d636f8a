"""Driver thread for a :class:`~pulse.core.scheduling.service.HeartbeatScheduler`.

┌──────────────────────────────────────────────────────────────────────────────┐
│  HEARTBEAT RUNNER LOOP                                                        │
│                                                                               │
│   scheduler.start()                                                           │
│   next_poll = monotonic() + poll_interval                                     │
│                                                                               │
│   while not stop_event.is_set():                                              │
│       if monotonic() >= next_poll:  scheduler.tick();  next_poll = now + poll │
│       scheduler.fire_due_timer()                                              │
│       wake_at = min(next_poll, scheduler.timer_deadline())                    │
│       stop_event.wait(wake_at - monotonic())     ◄── cancellation token      │
│                                                                               │
│   scheduler.stop()            (release lease, cancel timer)                   │
│                                                                               │
│  One thread owns the scheduler.  Control calls from other threads go         │
│  through the scheduler's RLock; a shortened deadline is noticed within       │
│  one poll interval at the latest.                                            │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import atexit
import logging
import signal
import threading
from typing import Any

from pulse.core.errors import categorize_error, is_retryable
from pulse.core.logging import LogContext, bind_context, unbind_context

from .service import HeartbeatScheduler

logger = logging.getLogger(__name__)

_MIN_WAIT_SECONDS = 0.01


class HeartbeatRunner:
    """Drives one scheduler on a monotonic clock.

    Example:
        >>> runner = HeartbeatRunner(scheduler, poll_interval_seconds=15.0)
        >>> runner.start()            # background daemon thread
        >>> ...
        >>> runner.stop()             # releases the lease

        >>> runner.run_forever()      # foreground, returns on SIGINT/SIGTERM
    """

    name = "heartbeat-runner"

    def __init__(self, scheduler: HeartbeatScheduler, poll_interval_seconds: float = 15.0) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        self.scheduler = scheduler
        self.poll_interval = poll_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = False
        self._atexit_registered = False
        self._previous_handlers: dict[int, Any] = {}
        self._bound_role: str | None = None

    # === Loop ===

    def _loop(self) -> None:
        clock = self.scheduler.clock
        with LogContext(pid=self.scheduler.pid):
            logger.info(f"HeartbeatRunner started (poll={self.poll_interval}s)")
            try:
                # a failed start leaves the scheduler started; the next tick contends again
                self._safe(self.scheduler.start)
                self._bind_role()
                next_poll = clock.monotonic() + self.poll_interval
                while not self._stop_event.is_set():
                    now = clock.monotonic()
                    if now >= next_poll:
                        self._safe(self.scheduler.tick)
                        next_poll = now + self.poll_interval
                    self._safe(self.scheduler.fire_due_timer)
                    self._bind_role()

                    wake_at = next_poll
                    deadline = self.scheduler.timer_deadline()
                    if deadline is not None:
                        wake_at = min(wake_at, deadline)
                    self._stop_event.wait(max(_MIN_WAIT_SECONDS, wake_at - clock.monotonic()))
            finally:
                self.scheduler.stop()
                logger.info("HeartbeatRunner stopped")
                unbind_context("role")
                self._bound_role = None

    def _bind_role(self) -> None:
        role = self.scheduler.role.value
        if role != self._bound_role:
            bind_context(role=role)
            self._bound_role = role

    @staticmethod
    def _safe(step) -> None:
        try:
            step()
        except Exception as e:
            category = categorize_error(e).value
            if is_retryable(e):
                logger.warning(f"Heartbeat step failed ({category}), retrying next tick: {e}")
            else:
                logger.exception(f"Heartbeat step failed ({category}): {e}")

    # === Lifecycle ===

    def start(self) -> None:
        """Run the loop in a daemon thread."""
        if self._started:
            logger.warning("HeartbeatRunner already started")
            return
        self._stop_event.clear()
        self._register_atexit()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="pulse-heartbeat")
        self._thread.start()
        self._started = True

    def run_forever(self) -> None:
        """Run the loop in the calling thread until :meth:`stop` or a signal."""
        if self._started:
            logger.warning("HeartbeatRunner already started")
            return
        self._stop_event.clear()
        self._register_atexit()
        self._install_signal_handlers()
        self._started = True
        try:
            self._loop()
        finally:
            self._restore_signal_handlers()
            self._started = False

    def stop(self, timeout: float = 5.0) -> None:
        """Set the cancellation token and wait for the loop to release the lease."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Heartbeat thread did not stop cleanly")
            self._thread = None
        self._started = False

    @property
    def is_running(self) -> bool:
        if self._thread is not None:
            return self._thread.is_alive()
        return self._started

    def health(self) -> dict[str, Any]:
        """Return runner health status."""
        stats = self.scheduler.get_stats()
        return {
            "healthy": self.is_running,
            "backend": self.name,
            "tick_count": stats.tick_count,
            "last_tick_at": stats.last_tick_at,
            "poll_interval_seconds": self.poll_interval,
        }

    # === Process hooks ===

    def _register_atexit(self) -> None:
        if not self._atexit_registered:
            atexit.register(self._release_on_exit)
            self._atexit_registered = True

    def _release_on_exit(self) -> None:
        self._stop_event.set()
        self.scheduler.stop()

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum, frame) -> None:
            logger.info(f"Received signal {signum}, stopping heartbeat")
            self._stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.signal(sig, _handle)

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(sig, handler)
        self._previous_handlers.clear()


__all__ = ["HeartbeatRunner"]
