"""Tests for the filesystem lease lock."""

import json
import multiprocessing
import os
import threading
import time

import pytest

from pulse.core.scheduling.lease import LeaseLock, LeaseRecord

from .conftest import PID_A, PID_B


def _age_file(path, clock, seconds):
    """Set ``path``'s mtime to ``seconds`` before the fake clock's now."""
    ts = (clock.now_ms() - seconds * 1000) / 1000
    os.utime(path, (ts, ts))


def _contend_in_child(path, barrier, results, done):
    """Child process body: race for the lease with the real pid and clock."""
    lock = LeaseLock(path)
    barrier.wait(timeout=10)
    result = lock.acquire(f"n-{os.getpid()}", time.time_ns() // 1_000_000)
    results.put((os.getpid(), result.ok, result.owner_pid))
    # the winner stays alive so late contenders cannot judge it dead
    done.wait(timeout=10)


class TestLeaseRecord:
    """Tests for LeaseRecord parsing."""

    def test_round_trips_camel_case_fields(self):
        record = LeaseRecord(pid=42, nonce="abc", acquired_at=1, refreshed_at=2, host_id="h")
        data = record.to_dict()
        assert data == {"pid": 42, "nonce": "abc", "acquiredAt": 1, "refreshedAt": 2, "hostId": "h"}
        assert LeaseRecord.from_dict(data) == record

    @pytest.mark.parametrize(
        "data",
        [
            None,
            [],
            {"nonce": "n", "refreshedAt": 1},
            {"pid": 0, "nonce": "n", "refreshedAt": 1},
            {"pid": True, "nonce": "n", "refreshedAt": 1},
            {"pid": 5, "nonce": "", "refreshedAt": 1},
            {"pid": 5, "nonce": "n", "refreshedAt": "yesterday"},
            {"pid": 5, "nonce": "n", "refreshedAt": float("inf")},
            {"pid": 5, "nonce": "n", "refreshedAt": float("nan")},
        ],
    )
    def test_rejects_incomplete_records(self, data):
        assert LeaseRecord.from_dict(data) is None

    def test_missing_acquired_at_falls_back_to_refreshed_at(self):
        record = LeaseRecord.from_dict({"pid": 5, "nonce": "n", "refreshedAt": 99})
        assert record.acquired_at == 99
        assert record.host_id == ""


class TestAcquire:
    """Tests for LeaseLock.acquire."""

    def test_acquire_on_empty_directory(self, make_lease, paths, clock):
        lock = make_lease(PID_A)
        result = lock.acquire("n-a", clock.now_ms())

        assert result.ok
        assert result.owner_pid == PID_A
        data = json.loads(paths.lease.read_text())
        assert data["pid"] == PID_A
        assert data["nonce"] == "n-a"
        assert data["acquiredAt"] == data["refreshedAt"] == clock.now_ms()

    def test_no_temp_files_left_behind(self, make_lease, paths, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        assert sorted(p.name for p in paths.root.iterdir()) == ["heartbeat.lock.json"]

    def test_fresh_lease_blocks_contender(self, make_lease, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        clock.advance(seconds=30)

        result = make_lease(PID_B).acquire("n-b", clock.now_ms())

        assert not result
        assert result.owner_pid == PID_A

    def test_reacquire_with_same_nonce_is_idempotent(self, make_lease, clock):
        lock = make_lease(PID_A)
        assert lock.acquire("n-a", clock.now_ms()).ok
        assert lock.acquire("n-a", clock.now_ms()).ok

    def test_same_pid_new_nonce_is_refused(self, make_lease, clock):
        lock = make_lease(PID_A)
        lock.acquire("n-a", clock.now_ms())
        assert not lock.acquire("n-other", clock.now_ms()).ok

    def test_stale_refresh_is_taken_over(self, make_lease, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        clock.advance(seconds=91)

        contender = make_lease(PID_B)
        result = contender.acquire("n-b", clock.now_ms())

        assert result.ok
        assert contender.read().pid == PID_B

    def test_exactly_at_threshold_is_not_stale(self, make_lease, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        clock.advance(seconds=90)
        assert not make_lease(PID_B).acquire("n-b", clock.now_ms()).ok

    def test_dead_holder_is_taken_over_immediately(self, make_lease, alive_pids, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        alive_pids.discard(PID_A)

        assert make_lease(PID_B).acquire("n-b", clock.now_ms()).ok

    def test_dead_pid_on_other_host_is_not_probed(self, paths, pid_probe, alive_pids, clock):
        remote = LeaseLock(paths.lease, pid=PID_A, host_id="other-host", pid_alive=pid_probe)
        remote.acquire("n-a", clock.now_ms())
        alive_pids.discard(PID_A)

        local = LeaseLock(paths.lease, pid=PID_B, host_id="test-host", pid_alive=pid_probe)
        assert not local.acquire("n-b", clock.now_ms()).ok

    def test_stale_override_per_call(self, make_lease, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        clock.advance(seconds=20)
        assert make_lease(PID_B).acquire("n-b", clock.now_ms(), stale_ms=10_000).ok

    def test_corrupt_lease_counts_as_held_until_mtime_is_old(self, make_lease, paths, clock):
        paths.lease.write_text("{not json")
        _age_file(paths.lease, clock, 10)

        result = make_lease(PID_B).acquire("n-b", clock.now_ms())
        assert not result.ok
        assert result.owner_pid is None

        _age_file(paths.lease, clock, 120)
        assert make_lease(PID_B).acquire("n-b", clock.now_ms()).ok

    @pytest.mark.parametrize(
        "content",
        [
            b"\xff\xfe garbage \x80",
            b'{"pid": 1001, "nonce": "x", "refreshedAt": Infinity}',
            b'{"pid": 1001, "nonce": "x", "refreshedAt": NaN}',
            b'{"pid": 1001, "nonce": "x", "refreshedAt": 1e999}',
        ],
        ids=["binary", "infinity", "nan", "overflowing-float"],
    )
    def test_undecodable_lease_is_treated_as_unparseable(self, make_lease, paths, clock, content):
        paths.lease.write_bytes(content)
        _age_file(paths.lease, clock, 10)

        result = make_lease(PID_B).acquire("n-b", clock.now_ms())
        assert not result.ok
        assert result.owner_pid is None
        assert make_lease(PID_B).holder_pid(clock.now_ms()) is None

        _age_file(paths.lease, clock, 300)
        assert make_lease(PID_B).acquire("n-b", clock.now_ms()).ok
        assert make_lease(PID_B).read().pid == PID_B

    def test_concurrent_acquire_has_single_winner(self, make_lease, alive_pids, clock):
        pids = list(range(2001, 2009))
        alive_pids.update(pids)
        barrier = threading.Barrier(len(pids))
        results = {}

        def contend(pid):
            lock = make_lease(pid)
            barrier.wait()
            results[pid] = lock.acquire(f"n-{pid}", clock.now_ms())

        threads = [threading.Thread(target=contend, args=(pid,)) for pid in pids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        winners = [pid for pid, result in results.items() if result.ok]
        assert len(winners) == 1
        assert make_lease(winners[0]).read().pid == winners[0]
        assert all(r.owner_pid == winners[0] for r in results.values() if not r.ok)


class TestRefreshAndRelease:
    """Tests for refresh/release fencing."""

    def test_refresh_updates_timestamp_only(self, make_lease, clock):
        lock = make_lease(PID_A)
        start = clock.now_ms()
        lock.acquire("n-a", start)
        clock.advance(seconds=15)

        assert lock.refresh("n-a", clock.now_ms())
        record = lock.read()
        assert record.acquired_at == start
        assert record.refreshed_at == clock.now_ms()

    def test_refresh_with_wrong_nonce_fails(self, make_lease, clock):
        lock = make_lease(PID_A)
        lock.acquire("n-a", clock.now_ms())
        assert not lock.refresh("n-stale", clock.now_ms())

    def test_refresh_after_takeover_fails(self, make_lease, clock):
        old = make_lease(PID_A)
        old.acquire("n-a", clock.now_ms())
        clock.advance(seconds=120)
        make_lease(PID_B).acquire("n-b", clock.now_ms())

        assert not old.refresh("n-a", clock.now_ms())
        assert old.read().pid == PID_B

    def test_refresh_without_lease_fails(self, make_lease, clock):
        assert not make_lease(PID_A).refresh("n-a", clock.now_ms())

    def test_release_by_owner_removes_file(self, make_lease, paths, clock):
        lock = make_lease(PID_A)
        lock.acquire("n-a", clock.now_ms())
        assert lock.release("n-a")
        assert not paths.lease.exists()

    def test_release_by_non_owner_is_refused(self, make_lease, paths, clock):
        make_lease(PID_A).acquire("n-a", clock.now_ms())
        assert not make_lease(PID_B).release("n-a")
        assert paths.lease.exists()

    def test_holder_pid(self, make_lease, clock):
        lock = make_lease(PID_A)
        assert lock.holder_pid() is None
        lock.acquire("n-a", clock.now_ms())
        assert lock.holder_pid(clock.now_ms()) == PID_A
        clock.advance(seconds=100)
        assert lock.holder_pid() == PID_A
        assert lock.holder_pid(clock.now_ms()) is None


@pytest.mark.integration
@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="needs fork()"
)
class TestSeparateProcesses:
    """Lease contention between real OS processes."""

    def test_single_winner_among_processes(self, paths):
        ctx = multiprocessing.get_context("fork")
        count = 8
        barrier = ctx.Barrier(count)
        results = ctx.Queue()
        done = ctx.Event()
        procs = [
            ctx.Process(target=_contend_in_child, args=(paths.lease, barrier, results, done))
            for _ in range(count)
        ]
        for proc in procs:
            proc.start()
        try:
            outcomes = [results.get(timeout=20) for _ in range(count)]
            holder = LeaseLock(paths.lease).read()
        finally:
            done.set()
            for proc in procs:
                proc.join(timeout=10)

        winners = [pid for pid, ok, _ in outcomes if ok]
        assert len(winners) == 1
        assert holder is not None and holder.pid == winners[0]
        assert {proc.pid for proc in procs} == {pid for pid, _, _ in outcomes}
        assert all(owner == winners[0] for _, ok, owner in outcomes if not ok)
        assert sorted(p.name for p in paths.root.iterdir()) == ["heartbeat.lock.json"]
