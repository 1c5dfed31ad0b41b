"""
Admin Engagement Routes - event log and per-company activity scores.

Provides:
- GET /api/admin/engagement/events: Event log (filters)
- POST /api/admin/engagement/events: Record an event (202, fire-and-forget)
- GET /api/admin/engagement/company-activity?company_ids=a,b: Scores and heat levels
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from finishing_crm.api.dependencies import get_current_user, get_db
from finishing_crm.services.engagement_service import EngagementService

router = APIRouter(
    prefix="/api/admin/engagement",
    tags=["admin", "engagement"],
    dependencies=[Depends(get_current_user)],
)


class EngagementEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_id: UUID
    event_type: str
    source: str
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    campaign_key: Optional[str] = None
    offer_key: Optional[str] = None
    url: Optional[str] = None
    value: Optional[Decimal] = None
    meta: Optional[Dict[str, Any]] = None
    occurred_at: datetime


class EngagementEventListResponse(BaseModel):
    events: List[EngagementEventResponse]


class RecordEventRequest(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=100)
    company_id: Optional[str] = None
    contact_id: Optional[str] = None
    source: str = Field("admin", max_length=50)
    campaign_key: Optional[str] = None
    offer_key: Optional[str] = None
    url: Optional[str] = None
    value: Optional[Decimal] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: Optional[datetime] = None


class RecordEventResponse(BaseModel):
    recorded: bool
    event_id: Optional[UUID] = None


class CompanyActivityResponse(BaseModel):
    company_id: str
    total_score: int
    score_30d: int
    score_7d: int
    event_count: int
    heat_level: str
    last_activity_at: Optional[datetime] = None
    recent_events: List[EngagementEventResponse]


class CompanyActivityListResponse(BaseModel):
    companies: List[CompanyActivityResponse]


@router.get("/events", response_model=EngagementEventListResponse)
def list_events(
    company_id: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    events = EngagementService(db).list_events(
        company_id=company_id,
        since=since,
        until=until,
        event_type=event_type,
        limit=limit,
    )
    return {"events": events}


@router.post("/events", response_model=RecordEventResponse, status_code=status.HTTP_202_ACCEPTED)
def record_event(request: RecordEventRequest, db: Session = Depends(get_db)):
    event = EngagementService(db).record(**request.model_dump())
    return {"recorded": event is not None, "event_id": event.event_id if event else None}


@router.get("/company-activity", response_model=CompanyActivityListResponse)
def company_activity(
    company_ids: str = Query(..., min_length=1, description="Comma-separated company ids"),
    db: Session = Depends(get_db),
):
    ids = [cid.strip() for cid in company_ids.split(",") if cid.strip()]
    activity = EngagementService(db).company_activity(ids)
    return {
        "companies": [
            CompanyActivityResponse(
                company_id=entry.company_id,
                total_score=entry.total_score,
                score_30d=entry.score_30d,
                score_7d=entry.score_7d,
                event_count=entry.event_count,
                heat_level=entry.heat_level,
                last_activity_at=entry.last_activity_at,
                recent_events=[EngagementEventResponse.model_validate(e) for e in entry.recent_events],
            )
            for entry in activity.values()
        ]
    }
