"""
SchedulerService tests.

Covers:
    1. job registration (both background jobs present, DB records created)
    2. run_job success / failure bookkeeping
    3. toggle_job
    4. loop start/stop
    5. the run-scheduler command for a dedicated scheduler process
"""

import importlib
import threading
from unittest.mock import patch

import pytest

from pmis.models.scheduling import ScheduledJob
from pmis.services.scheduler_service import SchedulerService, get_registered_jobs, register_job


class TestRegistry:
    def test_background_jobs_registered(self):
        jobs = get_registered_jobs()
        assert "deadline_scan" in jobs
        assert "notification_dispatch" in jobs

    def test_intervals_from_config(self, app):
        assert SchedulerService.interval_for("deadline_scan") == app.config["DEADLINE_SCAN_INTERVAL_SECONDS"]
        assert SchedulerService.interval_for("notification_dispatch") == 300

    def test_ensure_jobs_registered_creates_records(self):
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == len(get_registered_jobs())
        assert SchedulerService.ensure_jobs_registered() == []
        record = ScheduledJob.query.filter_by(job_name="deadline_scan").one()
        assert record.interval_seconds == 3600
        assert record.is_enabled is True


class TestRunJob:
    def test_unknown_job(self):
        result = SchedulerService.run_job("nope")
        assert result["status"] == "error"

    def test_deadline_scan_runs(self):
        SchedulerService.ensure_jobs_registered()
        result = SchedulerService.run_job("deadline_scan")
        assert result["status"] == "success"
        assert result["result"]["approaching_notified"] == 0
        record = ScheduledJob.query.filter_by(job_name="deadline_scan").one()
        assert record.run_count == 1
        assert record.last_run_status == "success"

    def test_notification_dispatch_runs(self):
        result = SchedulerService.run_job("notification_dispatch")
        assert result["status"] == "success"
        assert result["result"]["processed"] == 0

    def test_failure_is_recorded(self):
        SchedulerService.ensure_jobs_registered()
        with patch("pmis.services.scheduled_jobs.DeadlineScanner.run",
                   side_effect=RuntimeError("scan exploded")):
            result = SchedulerService.run_job("deadline_scan")
        assert result["status"] == "failed"
        assert "scan exploded" in result["error"]
        record = ScheduledJob.query.filter_by(job_name="deadline_scan").one()
        assert record.error_count == 1
        assert record.last_error == "scan exploded"


class TestToggle:
    def test_toggle_job(self):
        SchedulerService.ensure_jobs_registered()
        record = SchedulerService.toggle_job("notification_dispatch", False)
        assert record["is_enabled"] is False
        assert record["status"] == "paused"
        assert SchedulerService._is_enabled("notification_dispatch") is False

    def test_toggle_unknown(self):
        assert SchedulerService.toggle_job("nope", True) is None

    def test_list_jobs(self):
        SchedulerService.ensure_jobs_registered()
        names = {j["job_name"] for j in SchedulerService.list_jobs()}
        assert {"deadline_scan", "notification_dispatch"} <= names


class TestLoop:
    @pytest.fixture()
    def isolated_registry(self):
        """Swap in a single fast test job for the duration of one test."""
        from pmis.services import scheduler_service as mod

        saved_jobs, saved_intervals = dict(mod._job_registry), dict(mod._job_intervals)
        mod._job_registry.clear()
        mod._job_intervals.clear()
        yield mod
        SchedulerService.stop()
        mod._job_registry.clear()
        mod._job_intervals.clear()
        mod._job_registry.update(saved_jobs)
        mod._job_intervals.update(saved_intervals)

    def test_start_runs_jobs_until_stopped(self, app, isolated_registry):
        ran = threading.Event()
        app.config["TEST_LOOP_INTERVAL"] = 3600

        @register_job("test_loop", "TEST_LOOP_INTERVAL")
        def test_loop(app):
            ran.set()
            return {"ok": True}

        SchedulerService.start()
        assert SchedulerService.is_running() is True
        assert ran.wait(timeout=5)
        SchedulerService.stop()
        assert SchedulerService.is_running() is False

    def test_stop_when_not_running_is_noop(self):
        SchedulerService.stop()
        assert SchedulerService.is_running() is False


class TestDedicatedProcess:
    def test_cli_command_runs_scheduler(self, app):
        with patch.object(SchedulerService, "run_forever") as run_forever:
            result = app.test_cli_runner().invoke(args=["run-scheduler"])
        assert result.exit_code == 0
        run_forever.assert_called_once_with()

    def test_run_forever_returns_after_stop(self):
        with patch.object(SchedulerService, "start") as start:
            SchedulerService._stop_event = threading.Event()
            worker = threading.Thread(target=SchedulerService.run_forever, kwargs={"poll_seconds": 0.01})
            worker.start()
            SchedulerService._stop_event.set()
            worker.join(timeout=5)
        start.assert_called_once_with()
        assert not worker.is_alive()
        assert SchedulerService.is_running() is False

    def test_loops_off_by_default(self, monkeypatch):
        from pmis import config as config_module

        monkeypatch.delenv("SCHEDULER_ENABLED", raising=False)
        assert importlib.reload(config_module).Config.SCHEDULER_ENABLED is False
