"""
Scheduler Service.

Lightweight background scheduler built on plain threads.

Architecture:
    - Job functions are registered with ``@register_job(name, interval_config_key)``
    - Each job has a ScheduledJob row (run history, enabled flag)
    - ``start()`` launches one daemon thread per job; a thread runs its job,
      then waits the interval, so a job never overlaps with itself
    - ``run_job`` catches and logs every exception, so a failing run never
      stops the loop; the next tick still executes
    - Jobs can be triggered manually via the API (and are, in tests)
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask

from pmis.models import db
from pmis.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}
_job_intervals: dict[str, str] = {}


def register_job(name: str, interval_key: str):
    """Decorator to register a job function.

    ``interval_key`` names the app config entry holding the tick length
    in seconds.

    Usage:
        @register_job("deadline_scan", "DEADLINE_SCAN_INTERVAL_SECONDS")
        def deadline_scan(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        _job_intervals[name] = interval_key
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Thread-based scheduler.

    Manages job registration, persistence, and execution.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _stop_event: threading.Event | None = None
    _threads: list[threading.Thread] = []

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind to the app; start the loops when SCHEDULER_ENABLED."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.start()

    @classmethod
    def interval_for(cls, job_name: str) -> int:
        key = _job_intervals.get(job_name)
        return int(cls._app.config.get(key, 3600)) if cls._app and key else 3600

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records; refreshes the interval of existing ones.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, fn in _job_registry.items():
                interval = cls.interval_for(name)
                job = ScheduledJob.query.filter_by(job_name=name).first()
                if job is None:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        interval_seconds=interval,
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
                else:
                    job.interval_seconds = interval
            db.session.commit()
            if created:
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Loop ─────────────────────────────────────────────────────────────

    @classmethod
    def start(cls) -> None:
        """Launch one daemon thread per registered job."""
        if cls._stop_event is not None and not cls._stop_event.is_set():
            return
        cls.ensure_jobs_registered()
        cls._stop_event = threading.Event()
        cls._threads = []
        for name in _job_registry:
            thread = threading.Thread(
                target=cls._loop, args=(name, cls._stop_event),
                name=f"scheduler-{name}", daemon=True,
            )
            thread.start()
            cls._threads.append(thread)
        logger.info("Scheduler started: %s", ", ".join(_job_registry))

    @classmethod
    def stop(cls, timeout: float | None = 5.0) -> None:
        """Signal every loop to exit after its current run."""
        if cls._stop_event is None:
            return
        cls._stop_event.set()
        for thread in cls._threads:
            thread.join(timeout)
        cls._threads = []
        logger.info("Scheduler stopped")

    @classmethod
    def run_forever(cls, poll_seconds: float = 1.0) -> None:
        """Start the loops and block until interrupted; used by ``flask run-scheduler``."""
        cls.start()
        try:
            while cls.is_running():
                cls._stop_event.wait(poll_seconds)
        except KeyboardInterrupt:
            logger.info("Scheduler interrupted")
        finally:
            cls.stop()

    @classmethod
    def is_running(cls) -> bool:
        return cls._stop_event is not None and not cls._stop_event.is_set()

    @classmethod
    def _loop(cls, job_name: str, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            if cls._is_enabled(job_name):
                cls.run_job(job_name)
            stop_event.wait(cls.interval_for(job_name))

    @classmethod
    def _is_enabled(cls, job_name: str) -> bool:
        try:
            with cls._app.app_context():
                job = ScheduledJob.query.filter_by(job_name=job_name).first()
                return job is None or job.is_enabled
        except Exception:
            logger.exception("Could not read enabled flag for %s; running anyway", job_name)
            return True

    # ── Execution ────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "interval_seconds": cls.interval_for(name),
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()
