"""
Centralized settings for pulse-core.

Manifesto:
    Every knob (where the state directory lives, how often the leader
    refreshes, when a silent leader is considered dead, what command receives
    a check-in) is resolved in one validated, cached object.
    ``PulseSettings`` reads ``PULSE_*`` environment variables and an optional
    ``.env`` file.

Tags:
    pulse-core, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

import shlex
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from pulse.core.errors import ConfigError, InvalidIntervalError
from pulse.core.scheduling.intervals import DEFAULT_INTERVAL_MS, parse_interval, validate_interval
from pulse.core.scheduling.protocol import StatePaths


class PulseSettings(BaseSettings):
    """Pulse configuration.

    All fields can be set via ``PULSE_*`` environment variables (e.g.
    ``PULSE_STATE_DIR=/tmp/pulse``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="PULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Paths ────────────────────────────────────────────────────
    state_dir: Path = Field(default_factory=lambda: Path.home() / ".pulse")
    brain_path: Path | None = Field(default=None, description="JSONL memory/task store")

    # ── Leadership ───────────────────────────────────────────────
    refresh_interval_seconds: float = Field(default=15.0, gt=0)
    stale_after_seconds: float = Field(default=90.0, gt=0)

    # ── Schedule ─────────────────────────────────────────────────
    default_interval: str = Field(default="30m")

    # ── Dispatch ─────────────────────────────────────────────────
    dispatch_command: str | None = Field(default=None)
    dispatch_timeout_seconds: float = Field(default=10.0, gt=0)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("state_dir", "brain_path", mode="after")
    @classmethod
    def _expand_user(cls, value: Path | None) -> Path | None:
        return value.expanduser() if value is not None else None

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"console", "json"}:
            raise ValueError("log_format must be 'console' or 'json'")
        return value

    @model_validator(mode="after")
    def _check_timing(self) -> PulseSettings:
        """A lease must survive at least one missed refresh before it goes stale."""
        if self.stale_after_seconds <= self.refresh_interval_seconds:
            raise ValueError(
                f"stale_after_seconds ({self.stale_after_seconds}) must exceed "
                f"refresh_interval_seconds ({self.refresh_interval_seconds})"
            )
        return self

    # ── Derived properties ───────────────────────────────────────

    @property
    def paths(self) -> StatePaths:
        return StatePaths.from_dir(self.state_dir)

    @property
    def refresh_interval_ms(self) -> int:
        return int(self.refresh_interval_seconds * 1000)

    @property
    def stale_after_ms(self) -> int:
        return int(self.stale_after_seconds * 1000)

    def default_interval_ms(self) -> int:
        """Parse ``default_interval``, falling back to 30m when out of range."""
        try:
            return validate_interval(parse_interval(self.default_interval))
        except InvalidIntervalError:
            return DEFAULT_INTERVAL_MS

    def dispatch_argv(self) -> list[str]:
        """Split ``dispatch_command`` into argv (empty when unset).

        Raises:
            ConfigError: If the command string cannot be tokenized.
        """
        if not self.dispatch_command or not self.dispatch_command.strip():
            return []
        try:
            return shlex.split(self.dispatch_command)
        except ValueError as e:
            raise ConfigError(
                f"PULSE_DISPATCH_COMMAND is not a valid command line: {e}", cause=e
            ).with_context(value=self.dispatch_command) from e


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, PulseSettings] = {}


def get_settings(*, state_dir: Path | None = None, _force_reload: bool = False) -> PulseSettings:
    """Load, validate, and cache a :class:`PulseSettings` instance.

    Parameters
    ----------
    state_dir:
        Override ``PULSE_STATE_DIR`` (the CLI ``--state-dir`` option).
    _force_reload:
        Bypass cache and reload from the environment.
    """
    cache_key = str(state_dir or "")
    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    overrides = {"state_dir": state_dir} if state_dir is not None else {}
    settings = PulseSettings(**overrides)
    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
