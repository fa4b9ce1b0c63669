"""Periodic billing jobs.

``SchedulerDriver`` owns the job table and the overlap guard.  In production
Celery beat fires ``billing.run_job`` on the crontab below; the CLI and the
tests call ``run_job`` directly with an explicit ``now``.
"""

from __future__ import annotations

import datetime
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from celery import Celery
from celery.schedules import crontab

from services.reconciliation import ReconciliationEngine
from utils import parse_iso_datetime, utc_now

logger = logging.getLogger(__name__)

RUN_JOB_TASK = "billing.run_job"


@dataclass
class Job:
    name: str
    run: Callable
    schedule: dict
    description: str = ""


class SchedulerDriver:
    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine
        jobs = [
            Job("apply-scheduled-changes", engine.apply_scheduled_changes,
                {"minute": "0"}, "Apply downgrades and interval switches that are due"),
            Job("sync-flagged-subscriptions", engine.sync_flagged_subscriptions,
                {"minute": "0"}, "Pull gateway state for subscriptions flagged for sync"),
            Job("reconcile-paid-invoices", engine.reconcile_paid_invoices,
                {"minute": "15"}, "Activate paid invoices whose webhook never arrived"),
            Job("reconcile-pending-payments", engine.reconcile_pending_payments,
                {"minute": "30"}, "Poll the gateway for stale pending payments"),
            Job("reconcile-open-invoices", engine.reconcile_open_invoices,
                {"minute": "0", "hour": "8"}, "Flag subscriptions with overdue open invoices"),
        ]
        self.jobs = {job.name: job for job in jobs}
        self._running = {name: threading.Lock() for name in self.jobs}

    def job_names(self) -> list[str]:
        return list(self.jobs)

    def run_job(self, name: str, now: Optional[datetime.datetime] = None):
        """Run one job; returns its result, or None when a previous run is still busy."""
        if name not in self.jobs:
            raise KeyError(f"Unknown billing job '{name}'")
        lock = self._running[name]
        if not lock.acquire(blocking=False):
            logger.warning("Billing job %s is still running; skipping this tick", name)
            return None
        now = now or utc_now()
        try:
            logger.info("Running billing job %s (now=%s)", name, now.isoformat())
            result = self.jobs[name].run(now)
            logger.info("Billing job %s finished: %s", name, result)
            return result
        finally:
            lock.release()

    def beat_schedule(self) -> dict:
        return {
            name: {
                "task": RUN_JOB_TASK,
                "schedule": crontab(**job.schedule),
                "args": (name,),
            }
            for name, job in self.jobs.items()
        }


def make_celery(app) -> Celery:
    """Create the Celery app that drives the billing jobs for *app*."""
    from services.billing import get_billing

    settings = app.config["SETTINGS"]
    celery = Celery(
        app.import_name,
        broker=settings.scheduler.broker_url,
        backend=settings.scheduler.result_backend,
    )
    celery.conf.update(
        task_serializer="json",
        accept_content=["json"],
        result_serializer="json",
        timezone=settings.scheduler.timezone,
        enable_utc=True,
        result_expires=3600,
        task_time_limit=900,
        worker_prefetch_multiplier=1,
        beat_schedule=get_billing(app).scheduler.beat_schedule(),
    )

    @celery.task(name=RUN_JOB_TASK)
    def run_billing_job(name: str, now: Optional[str] = None):
        with app.app_context():
            result = get_billing(app).scheduler.run_job(name, parse_iso_datetime(now))
            return asdict(result) if result is not None else None

    return celery
