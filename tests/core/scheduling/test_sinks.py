"""Tests for the action sinks."""

import json
import os
import shutil

import pytest

from pulse.core.errors import DispatchError
from pulse.core.scheduling.executor import CheckPayload
from pulse.core.scheduling.sinks import CommandSink, InboxSink, NullSink


@pytest.fixture
def payload():
    return CheckPayload(
        check_number=4,
        triggered_at=1_700_000_000_000,
        forced=False,
        pinned_model=None,
        prompt="Scheduled check-in.",
        tasks=[{"id": "t1", "description": "review"}],
    )


class TestInboxSink:
    def test_writes_payload_file(self, tmp_path, payload):
        inbox = tmp_path / "inbox"
        assert InboxSink(inbox).dispatch(payload)

        written = inbox / "check-1700000000000-4.json"
        data = json.loads(written.read_text())
        assert data["check_number"] == 4
        assert data["tasks"] == [{"id": "t1", "description": "review"}]


class TestCommandSink:
    """Tests for CommandSink (runs real processes)."""

    def test_empty_argv_rejected(self, tmp_path):
        with pytest.raises(DispatchError):
            CommandSink([], tmp_path)

    @pytest.mark.skipif(shutil.which("true") is None, reason="needs 'true'")
    def test_exit_zero_accepts(self, tmp_path, payload):
        sink = CommandSink(["true"], tmp_path / "outbox")
        assert sink.dispatch(payload)
        assert (tmp_path / "outbox" / "check-1700000000000-4.json").exists()

    @pytest.mark.skipif(shutil.which("false") is None, reason="needs 'false'")
    def test_non_zero_exit_refuses(self, tmp_path, payload):
        assert not CommandSink(["false"], tmp_path).dispatch(payload)
        assert list(tmp_path.glob("check-*.json")) == []

    def test_missing_command_refuses(self, tmp_path, payload):
        assert not CommandSink(["/nonexistent/pulse-agent"], tmp_path).dispatch(payload)
        assert list(tmp_path.glob("check-*.json")) == []

    def test_old_payloads_are_pruned(self, tmp_path, payload):
        outbox = tmp_path / "outbox"
        outbox.mkdir()
        day_ms = 24 * 60 * 60 * 1000
        old = outbox / "check-1699900000000-1.json"
        recent = outbox / "check-1699990000000-3.json"
        unrelated = outbox / "notes.txt"
        for path, age_ms in ((old, day_ms + 60_000), (recent, 60_000), (unrelated, 2 * day_ms)):
            path.write_text("{}")
            ts = (payload.triggered_at - age_ms) / 1000
            os.utime(path, (ts, ts))

        sink = CommandSink(["/nonexistent/pulse-agent"], outbox)
        assert sink.prune_outbox(payload.triggered_at) == 1

        assert not old.exists()
        assert recent.exists()
        assert unrelated.exists()

    def test_prune_tolerates_missing_outbox(self, tmp_path):
        assert CommandSink(["true"], tmp_path / "never-created").prune_outbox(0) == 0

    @pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
    def test_still_running_after_timeout_accepts(self, tmp_path, payload):
        # the payload path lands in $1 and is ignored
        sink = CommandSink(["sh", "-c", "sleep 2", "pulse"], tmp_path, timeout_seconds=0.1)
        assert sink.dispatch(payload)


def test_null_sink_refuses(payload):
    assert NullSink().dispatch(payload) is False
