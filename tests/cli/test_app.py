"""Tests for pulse.cli - command smoke tests via CliRunner.

Every command runs against a temporary ``--state-dir``, so the tests exercise
the real settings channel, trigger marker and lease files.
"""

from __future__ import annotations

import json
import os
import time

import pytest
from typer.testing import CliRunner

from pulse.cli.app import app
from pulse.cli.utils import format_timestamp
from pulse.core.scheduling import LeaseLock, StatePaths

runner = CliRunner()


@pytest.fixture
def invoke(state_dir):
    def _invoke(*args):
        return runner.invoke(app, [*args, "--state-dir", str(state_dir)])

    return _invoke


@pytest.fixture
def live_lease(paths):
    """A fresh lease held by this test process."""
    lock = LeaseLock(paths.lease)
    assert lock.acquire("cli-test", time.time_ns() // 1_000_000).ok
    return lock


# ─── Status ──────────────────────────────────────────────────────────────


class TestStatus:
    """Tests for 'pulse status'."""

    def test_status_without_leader(self, invoke):
        result = invoke("status")
        assert result.exit_code == 0
        assert "Heartbeat" in result.output
        assert "no leader" in result.output
        assert "30m" in result.output

    def test_status_json(self, invoke):
        result = invoke("status", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["enabled"] is True
        assert data["interval"] == "30m"
        assert data["leader_pid"] is None
        assert data["role"] == "follower"

    def test_status_shows_leader(self, invoke, live_lease):
        result = invoke("status")
        assert f"leader pid {os.getpid()}" in result.output


# ─── Settings commands ───────────────────────────────────────────────────


class TestSettingsCommands:
    """Tests for enable/disable/interval/model."""

    def test_interval_show_and_set(self, invoke, paths):
        assert "Current interval: 30m" in invoke("interval").output

        result = invoke("interval", "1h")
        assert result.exit_code == 0
        assert "Heartbeat interval set to 1h" in result.output
        assert json.loads(paths.settings.read_text())["intervalMs"] == 3_600_000
        assert paths.reload_marker.exists()

        assert "Current interval: 1h" in invoke("interval").output

    def test_interval_zero_disables(self, invoke):
        result = invoke("interval", "0")
        assert "Heartbeat interval disabled" in result.output
        data = json.loads(invoke("status", "--json").output)
        assert data["enabled"] is False
        assert data["role"] == "disabled"

    @pytest.mark.parametrize("value", ["1m", "25h", "whenever"])
    def test_interval_rejected(self, invoke, paths, value):
        result = invoke("interval", value)
        assert result.exit_code == 1
        assert not paths.settings.exists()

    def test_disable_then_enable(self, invoke):
        result = invoke("disable")
        assert result.exit_code == 0
        assert "Heartbeat disabled" in result.output

        result = invoke("enable")
        assert result.exit_code == 0
        assert "Heartbeat enabled (every 30m)" in result.output

    def test_enable_restores_interval_after_zero(self, invoke):
        invoke("interval", "0")
        assert "every 30m" in invoke("enable").output

    def test_model_set_show_and_reset(self, invoke):
        assert "Heartbeat model: auto (auto)" in invoke("model").output

        result = invoke("model", "openai/gpt-4o")
        assert result.exit_code == 0
        assert "Heartbeat model set to openai/gpt-4o" in result.output
        assert "Heartbeat model: openai/gpt-4o (pinned)" in invoke("model").output

        assert "Heartbeat model set to auto" in invoke("model", "auto").output

    def test_model_rejected(self, invoke):
        assert invoke("model", "gpt-4o").exit_code == 1


# ─── Trigger / lease ─────────────────────────────────────────────────────


class TestTriggerAndLease:
    def test_trigger_queues_marker(self, invoke, paths):
        result = invoke("trigger")
        assert result.exit_code == 0
        assert "Requested check-in" in result.output
        assert paths.trigger_marker.exists()

    def test_trigger_names_leader(self, invoke, live_lease):
        result = invoke("trigger")
        assert f"Requested check-in (leader pid {os.getpid()})" in result.output

    def test_lease_absent(self, invoke):
        result = invoke("lease")
        assert result.exit_code == 0
        assert "No lease held." in result.output

    def test_lease_json(self, invoke, live_lease):
        data = json.loads(invoke("lease", "--json").output)
        assert data["pid"] == os.getpid()
        assert data["nonce"] == "cli-test"
        assert data["stale"] is False

    def test_corrupt_lease(self, invoke, paths):
        paths.lease.write_text("garbage")
        data = json.loads(invoke("lease", "--json").output)
        assert data == {"unparseable": True, "stale": False}


# ─── Misc ────────────────────────────────────────────────────────────────


class TestMisc:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("pulse-core ")

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("status", "enable", "disable", "interval", "model", "trigger", "run"):
            assert command in result.output

    def test_bad_environment_exits_2(self, monkeypatch, state_dir):
        monkeypatch.setenv("PULSE_STALE_AFTER_SECONDS", "1")
        result = runner.invoke(app, ["status", "--state-dir", str(state_dir)])
        assert result.exit_code == 2

    def test_state_dir_from_environment(self, monkeypatch, state_dir):
        monkeypatch.setenv("PULSE_STATE_DIR", str(state_dir))
        runner.invoke(app, ["trigger"])
        assert StatePaths.from_dir(state_dir).trigger_marker.exists()


class TestFormatTimestamp:
    def test_never(self):
        assert format_timestamp(None) == "never"

    def test_relative(self):
        now = 1_700_000_000_000
        assert format_timestamp(now + 30 * 60_000, now).endswith("(in 30m)")
        assert format_timestamp(now - 5 * 60_000, now).endswith("(5m ago)")
        assert format_timestamp(now, now).endswith("(now)")
