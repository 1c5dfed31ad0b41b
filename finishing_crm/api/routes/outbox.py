"""
Admin Outbox Routes - inspect and nudge queued jobs.

Provides:
- GET /api/admin/outbox: List jobs (filter by status, job_type)
- GET /api/admin/outbox/stats: Counts per status
- GET /api/admin/outbox/{job_id}: One job
- POST /api/admin/outbox/{job_id}/retry: Make a pending job due now
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.models.outbox import JobStatus
from finishing_crm.services.outbox_service import OutboxService

router = APIRouter(
    prefix="/api/admin/outbox",
    tags=["admin", "outbox"],
    dependencies=[Depends(get_current_user)],
)


class OutboxJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: UUID
    job_type: str
    status: JobStatus
    attempts: int
    max_attempts: int
    payload: Dict[str, Any]
    result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    scheduled_for: datetime
    locked_until: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class OutboxJobListResponse(BaseModel):
    jobs: List[OutboxJobResponse]


class OutboxStatsResponse(BaseModel):
    stats: Dict[str, int]
    total: int


@router.get("", response_model=OutboxJobListResponse, summary="List outbox jobs")
def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by status"),
    job_type: Optional[str] = Query(None, description="Filter by job type"),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
):
    jobs = OutboxService(db).list_jobs(status=status, job_type=job_type, limit=limit)
    return {"jobs": jobs}


@router.get("/stats", response_model=OutboxStatsResponse, summary="Job counts per status")
def job_stats(db: Session = Depends(get_db)):
    stats = OutboxService(db).job_stats()
    return {"stats": stats, "total": sum(stats.values())}


@router.get("/{job_id}", response_model=OutboxJobResponse, summary="Get one outbox job")
def get_job(job_id: UUID, db: Session = Depends(get_db)):
    return OutboxService(db).get_job(job_id)


@router.post("/{job_id}/retry", response_model=OutboxJobResponse, summary="Retry a pending job now")
def retry_job(job_id: UUID, db: Session = Depends(get_db)):
    """
    Reschedule a pending (or legacy failed) job to run on the next sweep.

    Completed and dead jobs cannot be retried (409).
    """
    return OutboxService(db).retry_job(job_id)
