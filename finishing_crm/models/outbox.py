"""
Outbox job model - durable queue of side-effecting work (emails, CRM sync).
"""
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4, UUID
import enum

from sqlalchemy import String, Integer, Text, DateTime, Uuid, Index, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from finishing_crm.lib.db import Base, JSONType


class JobType(str, enum.Enum):
    """Handler tag for an outbox job."""
    SEND_OFFER_EMAIL = "send_offer_email"
    CRM_SYNC_ORDER = "crm_sync_order"


class JobStatus(str, enum.Enum):
    """
    Outbox job status.

    pending -> processing -> completed | pending (retry) | dead.
    FAILED is only found on rows written by older producers.
    """
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD})


class OutboxJob(Base):
    """
    Outbox job entity.

    Rows are inserted by producers with status=pending and attempts=0 and
    mutated only by the outbox runner. Rows are kept for audit.
    """
    __tablename__ = "outbox"
    __table_args__ = (
        Index("ix_outbox_status_scheduled_for", "status", "scheduled_for"),
    )

    job_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )

    # job_type is kept as a plain string so rows with unknown types can still be
    # loaded and dead-lettered by the runner
    job_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )

    status: Mapped[JobStatus] = mapped_column(
        SQLEnum(
            JobStatus,
            name="outbox_job_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=JobStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    payload: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Handler input, schema selected by job_type",
    )
    result: Mapped[Optional[dict]] = mapped_column(
        JSONType,
        nullable=True,
        comment="Handler output and per-recipient progress",
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Scheduling and claim
    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    locked_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<OutboxJob(job_id={self.job_id}, type={self.job_type}, status={self.status})>"
