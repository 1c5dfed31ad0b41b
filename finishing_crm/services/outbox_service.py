"""
Outbox job store.

Producers call `enqueue`; the runner uses the claim/transition methods.
Every status change is a conditional UPDATE guarded by the status the caller
expects the row to be in, so two runners can never both claim a job and a
completed or dead row is never rewritten.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.metrics import get_metrics_collector
from finishing_crm.lib.settings import settings
from finishing_crm.lib.time import as_utc, utc_now
from finishing_crm.models.outbox import OutboxJob, JobStatus, JobType, TERMINAL_STATUSES
from finishing_crm.schemas.outbox import dump_payload, normalize_job_type, parse_payload
from finishing_crm.services.errors import (
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
)

logger = get_logger(__name__)

RETRYABLE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.FAILED})


def compute_backoff(attempts: int, base_minutes: int, max_minutes: int) -> timedelta:
    """
    Exponential backoff after the Nth failed attempt: base, 2*base, 4*base ... capped.

    Args:
        attempts: Failed attempts so far (>= 1)
        base_minutes: Delay after the first failure
        max_minutes: Upper bound
    """
    exponent = max(attempts - 1, 0)
    minutes = min(base_minutes * (2 ** exponent), max_minutes)
    return timedelta(minutes=minutes)


class OutboxService:
    """Insert, claim and transition outbox jobs."""

    def __init__(
        self,
        db: Session,
        default_max_attempts: Optional[int] = None,
        backoff_base_minutes: Optional[int] = None,
        backoff_max_minutes: Optional[int] = None,
    ):
        self.db = db
        self.default_max_attempts = default_max_attempts or settings.outbox_max_attempts
        self.backoff_base_minutes = backoff_base_minutes or settings.outbox_backoff_base_minutes
        self.backoff_max_minutes = backoff_max_minutes or settings.outbox_backoff_max_minutes
        self.metrics = get_metrics_collector()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: Union[JobType, str],
        payload: Union[Dict[str, Any], BaseModel],
        max_attempts: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> OutboxJob:
        """
        Insert one pending job.

        The payload is validated against the schema for job_type. Consent is
        not re-checked here; callers pass already-filtered recipients.

        Raises:
            UnknownJobTypeError / PayloadValidationError: Bad job_type or payload
            InvalidRequestError: max_attempts < 1
            SQLAlchemyError: Store write failed (not retried)
        """
        key = normalize_job_type(job_type)
        raw = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        model = parse_payload(key, raw)

        max_attempts = max_attempts if max_attempts is not None else self.default_max_attempts
        if max_attempts < 1:
            raise InvalidRequestError("max_attempts must be at least 1", {"max_attempts": max_attempts})

        now = utc_now()
        job = OutboxJob(
            job_type=key,
            status=JobStatus.PENDING,
            attempts=0,
            max_attempts=max_attempts,
            payload=dump_payload(model),
            scheduled_for=scheduled_for or now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Failed to enqueue outbox job", extra={"job_type": key}, exc_info=True)
            raise

        self.metrics.increment_jobs_enqueued(job_type=key)
        logger.info(
            "Outbox job enqueued",
            extra={"job_id": str(job.job_id), "job_type": key, "max_attempts": max_attempts},
        )
        return job

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_job(self, job_id: UUID) -> OutboxJob:
        job = self.db.get(OutboxJob, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError("Outbox job", str(job_id))
        return job

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[OutboxJob]:
        """Newest jobs first, optionally filtered."""
        stmt = select(OutboxJob).order_by(OutboxJob.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(OutboxJob.status == status)
        if job_type:
            stmt = stmt.where(OutboxJob.job_type == job_type)
        return list(self.db.execute(stmt).scalars().all())

    def job_stats(self) -> Dict[str, int]:
        """Job counts per status (every status present, zero if none)."""
        rows = self.db.execute(
            select(OutboxJob.status, func.count()).group_by(OutboxJob.status)
        ).all()
        stats = {s.value: 0 for s in JobStatus}
        for status, count in rows:
            stats[JobStatus(status).value] = count
        return stats

    # ------------------------------------------------------------------
    # Runner side
    # ------------------------------------------------------------------

    def claim_next(self, now: datetime, lock_timeout: timedelta) -> Optional[OutboxJob]:
        """
        Claim the oldest due pending job.

        Selects a candidate (FOR UPDATE SKIP LOCKED where supported) and moves
        it to processing with a conditional update. If another runner won the
        race the update touches no row and the next candidate is tried.

        Returns:
            The claimed job, or None if nothing is due
        """
        lost: set[UUID] = set()
        while True:
            stmt = (
                select(OutboxJob.job_id)
                .where(
                    OutboxJob.status == JobStatus.PENDING,
                    OutboxJob.scheduled_for <= now,
                )
                .order_by(OutboxJob.scheduled_for, OutboxJob.created_at)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if lost:
                stmt = stmt.where(OutboxJob.job_id.not_in(lost))

            job_id = self.db.execute(stmt).scalar_one_or_none()
            if job_id is None:
                self.db.rollback()
                return None

            if self.try_claim(job_id, now, lock_timeout):
                return self.get_job(job_id)

            logger.info("Outbox job claimed by another runner", extra={"job_id": str(job_id)})
            lost.add(job_id)

    def try_claim(self, job_id: UUID, now: datetime, lock_timeout: timedelta) -> bool:
        """Atomically move one job pending -> processing. False if it was not pending."""
        return self._transition(
            job_id,
            JobStatus.PENDING,
            status=JobStatus.PROCESSING,
            locked_until=now + lock_timeout,
            updated_at=now,
        )

    def save_progress(self, job_id: UUID, result: Dict[str, Any]) -> bool:
        """Persist handler progress while the job is still held."""
        return self._transition(job_id, JobStatus.PROCESSING, result=result, updated_at=utc_now())

    def mark_completed(
        self,
        job: OutboxJob,
        now: datetime,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """processing -> completed. Attempts are left unchanged."""
        values: Dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "completed_at": now,
            "locked_until": None,
            "last_error": None,
            "updated_at": now,
        }
        if result is not None:
            values["result"] = result
        return self._transition(job.job_id, JobStatus.PROCESSING, **values)

    def record_failure(
        self,
        job: OutboxJob,
        error: str,
        now: datetime,
        permanent: bool = False,
        result: Optional[Dict[str, Any]] = None,
    ) -> Optional[JobStatus]:
        """
        Register a failed attempt of a processing job.

        attempts += 1; the job goes back to pending with a backoff-adjusted
        scheduled_for while attempts < max_attempts, otherwise (or when the
        failure is permanent) it becomes dead.

        Returns:
            New status, or None if the job was no longer processing
        """
        attempts = min(job.attempts + 1, job.max_attempts)
        values: Dict[str, Any] = {
            "attempts": attempts,
            "last_error": error[:2000],
            "locked_until": None,
            "updated_at": now,
        }
        if result is not None:
            values["result"] = result

        if permanent or attempts >= job.max_attempts:
            new_status = JobStatus.DEAD
        else:
            new_status = JobStatus.PENDING
            values["scheduled_for"] = now + compute_backoff(
                attempts, self.backoff_base_minutes, self.backoff_max_minutes
            )
        values["status"] = new_status

        if not self._transition(job.job_id, JobStatus.PROCESSING, **values):
            logger.warning(
                "Outbox job left processing before failure was recorded",
                extra={"job_id": str(job.job_id)},
            )
            return None
        return new_status

    def requeue_expired(self, now: datetime) -> int:
        """
        Treat processing jobs whose claim expired as a failed attempt.

        Returns:
            Number of jobs moved back to pending or dead
        """
        stmt = select(OutboxJob).where(
            OutboxJob.status == JobStatus.PROCESSING,
            OutboxJob.locked_until.is_not(None),
            OutboxJob.locked_until < now,
        )
        expired = list(self.db.execute(stmt).scalars().all())
        self.db.rollback()

        count = 0
        for job in expired:
            new_status = self.record_failure(
                job,
                f"Claim expired at {as_utc(job.locked_until).isoformat()}",
                now,
            )
            if new_status is not None:
                count += 1
                logger.warning(
                    "Requeued stale outbox job",
                    extra={"job_id": str(job.job_id), "new_status": new_status.value},
                )
        return count

    def retry_job(self, job_id: UUID, now: Optional[datetime] = None) -> OutboxJob:
        """
        Make a pending (or legacy failed) job due immediately.

        Raises:
            NotFoundError: Unknown job
            InvalidTransitionError: Job is processing, completed or dead
        """
        job = self.get_job(job_id)
        if job.status not in RETRYABLE_STATUSES:
            raise InvalidTransitionError(
                f"Cannot retry a job in status '{job.status.value}'",
                {"job_id": str(job_id), "status": job.status.value},
            )

        now = now or utc_now()
        if not self._transition(
            job_id,
            job.status,
            status=JobStatus.PENDING,
            scheduled_for=now,
            updated_at=now,
        ):
            raise InvalidTransitionError("Job changed state while retrying", {"job_id": str(job_id)})

        logger.info("Outbox job rescheduled", extra={"job_id": str(job_id)})
        return self.get_job(job_id)

    def _transition(self, job_id: UUID, expected: JobStatus, **values: Any) -> bool:
        if expected in TERMINAL_STATUSES:
            raise InvalidTransitionError(f"Job in status '{expected.value}' is terminal")

        result = self.db.execute(
            update(OutboxJob)
            .where(OutboxJob.job_id == job_id, OutboxJob.status == expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1
