"""Periodic maintenance jobs driven by APScheduler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

PRESENCE_CLEANUP_JOB = "presence-cleanup"
RATE_LIMIT_CLEANUP_JOB = "rate-limit-cleanup"
USAGE_AGGREGATION_JOB = "usage-aggregation"


class MaintenanceScheduler:
    """Registers the cleanup and aggregation jobs on a background scheduler.

    Jobs are plain callables so the caller decides how each run gets its
    database connection. Nothing is scheduled until :meth:`start`.
    """

    def __init__(
        self,
        *,
        presence_cleanup: Callable[[], Any],
        rate_limit_cleanup: Callable[[], Any],
        usage_aggregation: Callable[[], Any],
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._jobs: dict[str, tuple[Callable[[], Any], Any]] = {
            PRESENCE_CLEANUP_JOB: (presence_cleanup, IntervalTrigger(hours=1)),
            RATE_LIMIT_CLEANUP_JOB: (rate_limit_cleanup, IntervalTrigger(hours=1)),
            USAGE_AGGREGATION_JOB: (
                usage_aggregation,
                CronTrigger(hour=0, minute=5, timezone="UTC"),
            ),
        }

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def job_ids(self) -> list[str]:
        return sorted(job.id for job in self._scheduler.get_jobs())

    def register(self) -> None:
        for job_id, (func, trigger) in self._jobs.items():
            self._scheduler.add_job(
                self._run,
                trigger,
                id=job_id,
                args=(job_id, func),
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )

    def start(self) -> None:
        if self._scheduler.running:
            return
        self.register()
        self._scheduler.start()
        logger.info("Maintenance scheduler started with %s jobs", len(self._jobs))

    def shutdown(self) -> None:
        if not self._scheduler.running:
            return
        self._scheduler.shutdown(wait=False)
        logger.info("Maintenance scheduler stopped")

    def run_now(self, job_id: str) -> Any:
        """Run one job synchronously, outside the schedule."""

        func, _ = self._jobs[job_id]
        return self._run(job_id, func)

    @staticmethod
    def _run(job_id: str, func: Callable[[], Any]) -> Any:
        try:
            result = func()
        except Exception:
            logger.exception("Maintenance job %s failed", job_id)
            raise
        logger.info("Maintenance job %s finished: %s", job_id, result)
        return result


__all__ = [
    "MaintenanceScheduler",
    "PRESENCE_CLEANUP_JOB",
    "RATE_LIMIT_CLEANUP_JOB",
    "USAGE_AGGREGATION_JOB",
]
