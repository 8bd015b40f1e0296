"""Tests for photobooth/housekeeping.py: session and output sweeps."""

import asyncio
import datetime
import os

import pytest

import photobooth.housekeeping
import photobooth.metrics
import photobooth.services.output_storage


def _write_output_with_age(directory, name, age_seconds, now):
    output_path = directory / name
    output_path.write_bytes(b"png")
    modified_timestamp = (now - datetime.timedelta(seconds=age_seconds)).timestamp()
    os.utime(output_path, (modified_timestamp, modified_timestamp))
    return output_path


class TestSessionSweep:
    def test_removes_sessions_older_than_retention_in_any_status(self, manual_wall_clock):
        store = photobooth.metrics.KioskMetricsStore(["kiosk-1"], clock=manual_wall_clock)
        stuck_session = store.open_session("stuck", "kiosk-1", "tcs50-classic", "male")
        completed_session = store.open_session("done", "kiosk-1", "tcs50-classic", "male")
        store.complete_session(completed_session, "/outputs/done.png")

        # Created at now - 2T with retention T.
        manual_wall_clock.advance(7200)
        store.open_session("recent", "kiosk-1", "tcs50-classic", "female")

        removed_count = photobooth.housekeeping.sweep_stale_sessions(
            store,
            retention_seconds=3600,
            now=manual_wall_clock(),
        )

        assert removed_count == 2
        assert store.get_session("stuck") is None
        assert store.get_session("done") is None
        assert store.get_session("recent") is not None
        assert stuck_session.status is photobooth.metrics.SessionStatus.PROCESSING

    def test_keeps_sessions_inside_retention(self, manual_wall_clock):
        store = photobooth.metrics.KioskMetricsStore(["kiosk-1"], clock=manual_wall_clock)
        store.open_session("young", "kiosk-1", "tcs50-classic", "male")
        manual_wall_clock.advance(1800)

        assert photobooth.housekeeping.sweep_stale_sessions(store, 3600, now=manual_wall_clock()) == 0
        assert store.session_count == 1

    async def test_sweep_action_removes_stale_sessions(self, manual_wall_clock):
        store = photobooth.metrics.KioskMetricsStore(["kiosk-1"], clock=manual_wall_clock)
        store.open_session("stale", "kiosk-1", "tcs50-classic", "male")
        manual_wall_clock.advance(7200)

        sweep_action = photobooth.housekeeping.build_session_sweep_action(store, 3600)

        assert await sweep_action() == 1
        assert store.session_count == 0


class TestOutputSweep:
    async def test_deletes_only_files_older_than_retention(self, tmp_path):
        now = datetime.datetime.now(datetime.UTC)
        _write_output_with_age(tmp_path, "old.png", age_seconds=5 * 3600, now=now)
        fresh_path = _write_output_with_age(tmp_path, "fresh.png", age_seconds=60, now=now)
        sink = photobooth.services.output_storage.FilesystemOutputSink(tmp_path)

        deleted_count = await photobooth.housekeeping.sweep_stale_outputs(sink, retention_seconds=4 * 3600, now=now)

        assert deleted_count == 1
        assert not (tmp_path / "old.png").exists()
        assert fresh_path.exists()

    async def test_missing_directory_sweeps_nothing(self, tmp_path):
        sink = photobooth.services.output_storage.FilesystemOutputSink(tmp_path / "absent")

        assert await photobooth.housekeeping.sweep_stale_outputs(sink, retention_seconds=1) == 0

    async def test_output_sweep_action_uses_the_sink(self, tmp_path):
        now = datetime.datetime.now(datetime.UTC)
        _write_output_with_age(tmp_path, "old.png", age_seconds=10_000, now=now)
        sink = photobooth.services.output_storage.FilesystemOutputSink(tmp_path)

        sweep_action = photobooth.housekeeping.build_output_sweep_action(sink, retention_seconds=3600)

        assert await sweep_action() == 1


class TestPeriodicJob:
    async def test_run_once_returns_the_action_result(self):
        async def action():
            return 3

        job = photobooth.housekeeping.PeriodicJob("test_job", interval_seconds=60, action=action)

        assert await job.run_once() == 3

    async def test_runs_repeatedly_and_survives_failures(self):
        call_count = 0
        third_call_reached = asyncio.Event()

        async def flaky_action():
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise RuntimeError("disk hiccup")
            if call_count >= 3:
                third_call_reached.set()
            return 0

        job = photobooth.housekeeping.PeriodicJob("flaky_job", interval_seconds=0.01, action=flaky_action)
        job.start()
        try:
            await asyncio.wait_for(third_call_reached.wait(), timeout=2.0)
            assert job.is_running
        finally:
            await job.stop()

        assert call_count >= 3
        assert not job.is_running

    async def test_start_twice_keeps_a_single_task(self):
        async def action():
            return 0

        job = photobooth.housekeeping.PeriodicJob("idempotent_job", interval_seconds=60, action=action)
        job.start()
        first_task = job._task
        job.start()

        assert job._task is first_task
        await job.stop()

    async def test_stop_without_start_is_a_no_op(self):
        async def action():
            return 0

        job = photobooth.housekeeping.PeriodicJob("idle_job", interval_seconds=60, action=action)
        await job.stop()

        assert not job.is_running

    @pytest.mark.parametrize("interval_seconds", [0, -5])
    def test_rejects_non_positive_interval(self, interval_seconds):
        async def action():
            return 0

        with pytest.raises(ValueError):
            photobooth.housekeeping.PeriodicJob("bad_job", interval_seconds=interval_seconds, action=action)
