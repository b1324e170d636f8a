"""
Shared pytest fixtures and configuration for pulse-core tests.

This module provides:
- Environment isolation (no stray ``PULSE_*`` variables, fresh settings cache)
- A temporary state directory and its derived paths
- A deterministic fake clock

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments.
"""

import os
import sys
from pathlib import Path

import pytest

# Ensure pulse package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from pulse.core.config import clear_settings_cache
from pulse.core.scheduling import FakeClock, StatePaths


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Strip PULSE_* variables and run each test from an empty cwd (.env lookup)."""
    for key in list(os.environ):
        if key.startswith("PULSE_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def state_dir(tmp_path) -> Path:
    """Empty state directory for one test."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def paths(state_dir) -> StatePaths:
    return StatePaths.from_dir(state_dir)


@pytest.fixture
def clock() -> FakeClock:
    """Fake clock starting at a fixed epoch (2023-11-14T22:13:20Z)."""
    return FakeClock(start_ms=1_700_000_000_000)
