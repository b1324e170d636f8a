"""Tests for PulseSettings and the settings cache."""

from pathlib import Path

import pytest
from pydantic import ValidationError as PydanticValidationError

from pulse.core.config import PulseSettings, clear_settings_cache, get_settings
from pulse.core.errors import ConfigError
from pulse.core.scheduling import CommandSink, InboxSink, JsonlBrainStore, NullSink, create_scheduler
from pulse.core.scheduling.intervals import DEFAULT_INTERVAL_MS, HOUR_MS


class TestDefaults:
    def test_defaults(self):
        settings = PulseSettings()
        assert settings.state_dir == Path.home() / ".pulse"
        assert settings.refresh_interval_ms == 15_000
        assert settings.stale_after_ms == 90_000
        assert settings.default_interval_ms() == DEFAULT_INTERVAL_MS
        assert settings.dispatch_argv() == []
        assert settings.log_format == "console"

    def test_paths(self, tmp_path):
        paths = PulseSettings(state_dir=tmp_path).paths
        assert paths.lease == tmp_path / "heartbeat.lock.json"
        assert paths.trigger_marker == tmp_path / "heartbeat.trigger"


class TestEnvironment:
    """Tests for PULSE_* environment overrides."""

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PULSE_STATE_DIR", str(tmp_path))
        monkeypatch.setenv("PULSE_DEFAULT_INTERVAL", "2h")
        monkeypatch.setenv("PULSE_STALE_AFTER_SECONDS", "120")

        settings = PulseSettings()

        assert settings.state_dir == tmp_path
        assert settings.default_interval_ms() == 2 * HOUR_MS
        assert settings.stale_after_ms == 120_000

    def test_dotenv_file(self, tmp_path):
        (tmp_path / ".env").write_text("PULSE_LOG_FORMAT=json\n")
        assert PulseSettings().log_format == "json"

    def test_stale_must_exceed_refresh(self):
        with pytest.raises(PydanticValidationError, match="must exceed"):
            PulseSettings(refresh_interval_seconds=30, stale_after_seconds=30)

    def test_bad_log_format(self):
        with pytest.raises(PydanticValidationError):
            PulseSettings(log_format="xml")

    @pytest.mark.parametrize("value", ["1m", "48h", "often"])
    def test_bad_default_interval_falls_back(self, value):
        assert PulseSettings(default_interval=value).default_interval_ms() == DEFAULT_INTERVAL_MS


class TestDispatchCommand:
    def test_split(self):
        settings = PulseSettings(dispatch_command="agent --model 'openai/gpt 4o'")
        assert settings.dispatch_argv() == ["agent", "--model", "openai/gpt 4o"]

    def test_unbalanced_quotes(self):
        with pytest.raises(ConfigError):
            PulseSettings(dispatch_command="agent 'oops").dispatch_argv()


class TestCache:
    def test_cached_per_state_dir(self, tmp_path):
        first = get_settings(state_dir=tmp_path)
        assert get_settings(state_dir=tmp_path) is first
        assert get_settings(state_dir=tmp_path, _force_reload=True) is not first

    def test_clear(self):
        first = get_settings()
        clear_settings_cache()
        assert get_settings() is not first


class TestFactories:
    """Tests for create_scheduler wiring."""

    def test_scheduler_from_settings(self, tmp_path):
        settings = PulseSettings(state_dir=tmp_path, default_interval="1h", stale_after_seconds=60)
        scheduler = create_scheduler(settings)

        assert scheduler.paths.root == tmp_path
        assert scheduler.lease.stale_ms == 60_000
        assert scheduler.status().interval_ms == HOUR_MS
        assert isinstance(scheduler.executor.sink, NullSink)
        assert isinstance(scheduler.executor.fallback, InboxSink)
        assert scheduler.executor.store is None
        assert scheduler.executor.checklist_paths == [tmp_path / "HEARTBEAT.md"]

    def test_command_and_brain(self, tmp_path):
        settings = PulseSettings(
            state_dir=tmp_path, dispatch_command="notify-agent", brain_path=tmp_path / "brain.jsonl"
        )
        executor = create_scheduler(settings).executor

        assert isinstance(executor.sink, CommandSink)
        assert executor.sink.argv == ["notify-agent"]
        assert isinstance(executor.store, JsonlBrainStore)
