"""Centralized configuration.

Quick start::

    from pulse.core.config import get_settings

    settings = get_settings()
    print(settings.state_dir)            # ~/.pulse
    print(settings.paths.lease)          # ~/.pulse/heartbeat.lock.json

Guardrails:
    ❌ Parsing ``PULSE_*`` env vars ad-hoc in each module
    ✅ ``get_settings().refresh_interval_ms`` from the cached instance
"""

from .settings import PulseSettings, clear_settings_cache, get_settings

__all__ = [
    "PulseSettings",
    "get_settings",
    "clear_settings_cache",
]
