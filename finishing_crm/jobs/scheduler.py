"""
In-process APScheduler for the outbox sweep and daily reorder reminders.

Production normally drives both through the cron endpoints; set
SCHEDULER_ENABLED=true to run them inside the API process instead. Overlapping
sweeps are safe because claims are conditional updates, so one instance per
job with coalesced misfires is all the scheduler enforces.
"""
import logging
from typing import Callable, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from finishing_crm.lib.metrics import get_metrics_collector

logger = logging.getLogger(__name__)

JOB_DEFAULTS = {"coalesce": True, "max_instances": 1, "misfire_grace_time": 300}

_scheduler: Optional["SchedulerManager"] = None


class SchedulerManager:
    """Owns a BackgroundScheduler; every run is logged and counted per job id."""

    def __init__(self):
        self.scheduler = BackgroundScheduler(timezone="UTC", job_defaults=JOB_DEFAULTS)
        self.scheduler.add_listener(self._on_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)

    def _on_event(self, event: JobExecutionEvent) -> None:
        if event.code == EVENT_JOB_MISSED:
            outcome = "missed"
            logger.warning("Scheduled job missed", extra={"scheduled_job": event.job_id})
        elif event.exception is not None:
            outcome = "error"
            logger.error(
                f"Scheduled job failed: {event.exception.__class__.__name__}: {event.exception}",
                extra={"scheduled_job": event.job_id},
                exc_info=event.exception,
            )
        else:
            outcome = "ok"
            logger.info("Scheduled job finished", extra={"scheduled_job": event.job_id, "result": event.retval})
        get_metrics_collector().increment_scheduled_runs(event.job_id, outcome)

    def start(self) -> None:
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return
        self.scheduler.start()
        logger.info("Scheduler started", extra={"scheduled_jobs": [job.id for job in self.get_jobs()]})

    def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler; `wait` blocks until running jobs return."""
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def add_job(self, func: Callable, job_id: str, trigger: BaseTrigger) -> None:
        """Register `func` under `job_id`, replacing any job with that id."""
        # replace_existing is only honoured once the scheduler is running
        if self.scheduler.get_job(job_id) is not None:
            self.scheduler.remove_job(job_id)
        self.scheduler.add_job(func, trigger=trigger, id=job_id, replace_existing=True)
        logger.info("Scheduled job registered", extra={"scheduled_job": job_id, "trigger": str(trigger)})

    def add_cron_job(
        self,
        func: Callable,
        job_id: str,
        hour: Optional[int] = None,
        minute: Optional[int] = None,
        day_of_week: Optional[str] = None,
    ) -> None:
        self.add_job(func, job_id, CronTrigger(hour=hour, minute=minute, day_of_week=day_of_week, timezone="UTC"))

    def add_interval_job(
        self,
        func: Callable,
        job_id: str,
        seconds: int = 0,
        minutes: int = 0,
        hours: int = 0,
    ) -> None:
        """
        Raises:
            ValueError: all of seconds, minutes and hours are zero
        """
        if not (seconds or minutes or hours):
            raise ValueError(f"Interval job {job_id} needs a non-zero interval")
        self.add_job(func, job_id, IntervalTrigger(seconds=seconds, minutes=minutes, hours=hours, timezone="UTC"))

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()


def get_scheduler() -> SchedulerManager:
    global _scheduler
    if _scheduler is None:
        _scheduler = SchedulerManager()
    return _scheduler
