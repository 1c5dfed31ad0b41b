"""
Outbox Runner - drains due outbox jobs.

Runs from APScheduler (every `outbox_sweep_interval_minutes`) and from the
cron endpoint POST /api/outbox/run. Several runners may overlap; claims are
conditional updates so each job is executed by at most one of them.

Execution flow:
1. Requeue processing jobs whose claim expired (crashed runner)
2. Claim the oldest due job, execute its handler, record the outcome
3. Repeat until no job is due, the batch is full or the time budget is spent
"""
import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.jobs.errors import JobError, PermanentJobError
from finishing_crm.jobs.handlers import HANDLERS, JobContext
from finishing_crm.lib.db import get_db_context
from finishing_crm.lib.links import OfferLinkGenerator, get_offer_link_generator
from finishing_crm.lib.logging import correlation_scope, get_logger
from finishing_crm.lib.metrics import get_metrics_collector
from finishing_crm.lib.settings import settings
from finishing_crm.lib.time import as_utc, utc_now
from finishing_crm.models.outbox import JobStatus, OutboxJob
from finishing_crm.schemas.outbox import parse_payload
from finishing_crm.services.crm_client import CrmClient, get_crm_client, is_crm_configured
from finishing_crm.services.email_provider import EmailProvider, get_email_provider
from finishing_crm.services.engagement_service import EngagementService
from finishing_crm.services.errors import InvalidRequestError
from finishing_crm.services.outbox_service import OutboxService
from finishing_crm.services.reorder_service import ReorderReminderService

logger = get_logger(__name__)

AUDIT_EVENTS = {
    JobStatus.COMPLETED: "outbox_job_completed",
    JobStatus.PENDING: "outbox_job_retry_scheduled",
    JobStatus.DEAD: "outbox_job_dead",
}
OUTCOMES = {
    JobStatus.COMPLETED: "completed",
    JobStatus.PENDING: "retry_scheduled",
    JobStatus.DEAD: "dead",
}


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    requeued: int = 0
    processed: int = 0
    completed: int = 0
    retried: int = 0
    dead: int = 0
    jobs: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class OutboxRunner:
    """Claim and execute due outbox jobs."""

    def __init__(
        self,
        db: Session,
        email_provider: Optional[EmailProvider] = None,
        crm_client: Optional[CrmClient] = None,
        link_generator: Optional[OfferLinkGenerator] = None,
        outbox: Optional[OutboxService] = None,
        batch_size: Optional[int] = None,
        max_duration_seconds: Optional[float] = None,
        lock_timeout_seconds: Optional[int] = None,
        send_concurrency: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.outbox = outbox or OutboxService(db)
        self.engagement = EngagementService(db)
        self.email_provider = email_provider or get_email_provider()
        if crm_client is None and is_crm_configured():
            crm_client = get_crm_client()
        self.crm_client = crm_client
        self.link_generator = link_generator or get_offer_link_generator()
        self.batch_size = batch_size or settings.outbox_batch_size
        self.max_duration_seconds = max_duration_seconds or settings.outbox_max_duration_seconds
        self.lock_timeout = timedelta(seconds=lock_timeout_seconds or settings.outbox_lock_timeout_seconds)
        self.send_concurrency = send_concurrency or settings.outbox_send_concurrency
        self.clock = clock
        self.metrics = get_metrics_collector()

    async def run(self, now: Optional[datetime] = None) -> RunSummary:
        """
        Process due jobs until none remain, the batch is full or time runs out.

        Args:
            now: Fixed reference time (tests); defaults to the clock per job

        Returns:
            RunSummary with per-job outcomes
        """
        run_id = str(uuid4())
        with correlation_scope(f"outbox-{run_id}"):
            summary = await self._drain(RunSummary(run_id=run_id, started_at=now or self.clock()), now)
            self.metrics.record_outbox_run(summary.processed, as_utc(summary.finished_at).timestamp())
            logger.info(
                "Outbox run finished",
                extra={
                    "run_id": run_id,
                    "requeued": summary.requeued,
                    "processed": summary.processed,
                    "completed": summary.completed,
                    "retried": summary.retried,
                    "dead": summary.dead,
                },
            )
        return summary

    async def _drain(self, summary: RunSummary, now: Optional[datetime]) -> RunSummary:
        run_id = summary.run_id
        deadline = time.monotonic() + self.max_duration_seconds

        summary.requeued = self.outbox.requeue_expired(now or self.clock())

        while summary.processed < self.batch_size:
            if time.monotonic() >= deadline:
                logger.info("Outbox runner time budget spent", extra={"run_id": run_id})
                break

            current = now or self.clock()
            job = self.outbox.claim_next(current, self.lock_timeout)
            if job is None:
                break

            entry = await self.process(job, current)
            summary.processed += 1
            summary.jobs.append(entry)
            if entry["status"] == JobStatus.COMPLETED.value:
                summary.completed += 1
            elif entry["status"] == JobStatus.PENDING.value:
                summary.retried += 1
            elif entry["status"] == JobStatus.DEAD.value:
                summary.dead += 1

        summary.finished_at = self.clock()
        return summary

    async def process(self, job: OutboxJob, now: datetime) -> Dict[str, Any]:
        """Execute one claimed job and record its outcome."""
        ctx = JobContext(
            db=self.db,
            engagement=self.engagement,
            email_provider=self.email_provider,
            link_generator=self.link_generator,
            crm_client=self.crm_client,
            send_concurrency=self.send_concurrency,
            now=now,
        )

        payload = None
        new_status: Optional[JobStatus]
        error: Optional[str] = None
        try:
            payload = parse_payload(job.job_type, job.payload)
            result = await HANDLERS[job.job_type](job, payload, ctx)
        except Exception as e:
            # A store error inside the handler leaves the transaction aborted
            self.db.rollback()
            new_status, error = self._record_failure(job, e, now)
        else:
            completed = self.outbox.mark_completed(job, now, result=result)
            new_status = JobStatus.COMPLETED if completed else None

        job = self.outbox.get_job(job.job_id)
        entry = {
            "job_id": str(job.job_id),
            "job_type": job.job_type,
            "status": new_status.value if new_status else job.status.value,
            "attempts": job.attempts,
            "error": error,
        }

        if new_status is None:
            # Claim expired and another runner took over
            logger.warning("Outbox job outcome discarded", extra=entry)
            return entry

        self.metrics.increment_jobs_processed(job_type=job.job_type, outcome=OUTCOMES[new_status])
        self.engagement.record(
            AUDIT_EVENTS[new_status],
            company_id=getattr(payload, "company_id", None) or raw_company_id(job.payload),
            source="outbox",
            campaign_key=getattr(payload, "campaign_key", None),
            offer_key=getattr(payload, "offer_key", None),
            meta={
                "job_id": str(job.job_id),
                "job_type": job.job_type,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "error": error,
            },
            occurred_at=now,
        )

        log = logger.info if new_status == JobStatus.COMPLETED else logger.warning
        log(f"Outbox job {OUTCOMES[new_status]}", extra=entry)
        return entry

    def _record_failure(self, job: OutboxJob, exc: Exception, now: datetime) -> Tuple[Optional[JobStatus], str]:
        """Map a handler exception to retry or dead; returns (new status, error)."""
        if isinstance(exc, (InvalidRequestError, JobError)):
            error = exc.message
        else:
            logger.error(
                f"Outbox handler raised unexpectedly: {exc}",
                extra={"job_id": str(job.job_id), "job_type": job.job_type},
                exc_info=exc,
            )
            error = f"{exc.__class__.__name__}: {exc}"

        permanent = isinstance(exc, (InvalidRequestError, PermanentJobError))
        result = exc.result if isinstance(exc, JobError) else None
        return self.outbox.record_failure(job, error, now, permanent=permanent, result=result), error


def raw_company_id(payload: Any) -> Optional[str]:
    """company_id from a stored payload that may not even be an object."""
    if isinstance(payload, dict):
        return payload.get("company_id")
    return None


def list_due_jobs(db: Session, now: datetime, limit: int) -> List[OutboxJob]:
    stmt = (
        select(OutboxJob)
        .where(OutboxJob.status == JobStatus.PENDING, OutboxJob.scheduled_for <= now)
        .order_by(OutboxJob.scheduled_for, OutboxJob.created_at)
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


async def run_outbox() -> Dict[str, Any]:
    with get_db_context() as db:
        summary = await OutboxRunner(db).run()
    return summary.to_dict()


def run_outbox_sync() -> Dict[str, Any]:
    """
    Synchronous wrapper for APScheduler compatibility.
    """
    return asyncio.run(run_outbox())


def run_reorder_reminders_sync() -> Dict[str, Any]:
    with get_db_context() as db:
        return ReorderReminderService(db).generate().to_dict()


# ============================================================================
# Scheduler Registration
# ============================================================================


def register_outbox_jobs(scheduler_manager):
    """
    Register the outbox sweep and the daily reorder reminder generator.

    Example:
        scheduler = get_scheduler()
        register_outbox_jobs(scheduler)
        scheduler.start()
    """
    logger.info("Registering outbox jobs")

    scheduler_manager.add_interval_job(
        func=run_outbox_sync,
        job_id="outbox_sweep",
        minutes=settings.outbox_sweep_interval_minutes,
    )
    scheduler_manager.add_cron_job(
        func=run_reorder_reminders_sync,
        job_id="reorder_reminders_daily",
        hour=settings.reorder_cron_hour,
        minute=0,
    )

    logger.info("Outbox jobs registered")


# ============================================================================
# Manual Trigger (for testing and debugging)
# ============================================================================


async def trigger_outbox_manual(dry_run: bool = False) -> Dict[str, Any]:
    """
    Run the outbox immediately, bypassing the scheduler.

    Args:
        dry_run: If True, only list due jobs without claiming them
    """
    logger.info(f"Manual outbox trigger (dry_run: {dry_run})")

    if dry_run:
        with get_db_context() as db:
            due = list_due_jobs(db, utc_now(), settings.outbox_batch_size)
            return {
                "dry_run": True,
                "total_due": len(due),
                "job_ids": [str(job.job_id) for job in due],
            }

    return await run_outbox()
