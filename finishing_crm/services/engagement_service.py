"""
Engagement recorder and activity scoring.

Events are append-only. `record` is fire-and-forget: a failed write is
logged and never propagates to the caller, so audit and analytics writes
cannot break the operation that triggered them.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.metrics import get_metrics_collector
from finishing_crm.lib.time import as_utc, utc_now
from finishing_crm.models.engagement_events import EngagementEvent

logger = get_logger(__name__)


# Score weights per event type; unknown types score 1
EVENT_SCORES: Dict[str, int] = {
    "order_placed": 100,
    "subscription_created": 80,
    "quote_requested": 50,
    "trial_started": 40,
    "reorder_view": 10,
    "quote_view": 8,
    "offer_view": 6,
    "product_view": 5,
    "solution_page_view": 4,
    "machine_page_view": 3,
    "email_click": 2,
    "subscription_page_view": 2,
    "page_view": 1,
}
DEFAULT_EVENT_SCORE = 1
RECENT_EVENTS_LIMIT = 20

# Ordered highest first
HEAT_THRESHOLDS = (
    ("fire", 50),
    ("hot", 20),
    ("warm", 5),
)


def event_score(event_type: str) -> int:
    return EVENT_SCORES.get(event_type, DEFAULT_EVENT_SCORE)


def heat_level(score_7d: int) -> str:
    """Heat bucket from the last-7-days score."""
    for level, threshold in HEAT_THRESHOLDS:
        if score_7d >= threshold:
            return level
    return "cold"


@dataclass
class CompanyActivity:
    company_id: str
    total_score: int = 0
    score_30d: int = 0
    score_7d: int = 0
    event_count: int = 0
    last_activity_at: Optional[datetime] = None
    heat_level: str = "cold"
    recent_events: List[EngagementEvent] = field(default_factory=list)


class EngagementService:
    """Append and query engagement events."""

    def __init__(self, db: Session):
        self.db = db
        self.metrics = get_metrics_collector()

    def record(
        self,
        event_type: str,
        company_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        source: str = "system",
        campaign_key: Optional[str] = None,
        offer_key: Optional[str] = None,
        url: Optional[str] = None,
        value: Optional[Decimal] = None,
        meta: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[EngagementEvent]:
        """
        Append one engagement event.

        Returns:
            The stored event, or None if the write failed (failure is logged)
        """
        event = EngagementEvent(
            event_type=event_type,
            source=source,
            company_id=company_id,
            contact_id=contact_id,
            campaign_key=campaign_key,
            offer_key=offer_key,
            url=url,
            value=value,
            meta=meta or {},
            occurred_at=occurred_at or utc_now(),
        )
        try:
            self.db.add(event)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Failed to record engagement event: {e}",
                extra={"event_type": event_type, "company_id": company_id},
            )
            return None

        self.metrics.increment_engagement_events(event_type=event_type)
        return event

    def list_events(
        self,
        company_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[EngagementEvent]:
        """Events newest first."""
        stmt = select(EngagementEvent).order_by(EngagementEvent.occurred_at.desc()).limit(limit)
        if company_id:
            stmt = stmt.where(EngagementEvent.company_id == company_id)
        if since is not None:
            stmt = stmt.where(EngagementEvent.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(EngagementEvent.occurred_at <= until)
        if event_type:
            stmt = stmt.where(EngagementEvent.event_type == event_type)
        return list(self.db.execute(stmt).scalars().all())

    def has_recent_event(self, company_id: str, event_type: str, since: datetime) -> bool:
        stmt = (
            select(EngagementEvent.event_id)
            .where(
                EngagementEvent.company_id == company_id,
                EngagementEvent.event_type == event_type,
                EngagementEvent.occurred_at >= since,
            )
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def company_activity(
        self,
        company_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, CompanyActivity]:
        """
        Score engagement per company.

        Args:
            company_ids: Companies to score
            now: Reference time for the 7 and 30 day windows

        Returns:
            Mapping company_id -> CompanyActivity (every requested id present)
        """
        now = now or utc_now()
        ids = [cid for cid in dict.fromkeys(company_ids) if cid]
        activity = {cid: CompanyActivity(company_id=cid) for cid in ids}
        if not ids:
            return activity

        stmt = (
            select(EngagementEvent)
            .where(EngagementEvent.company_id.in_(ids))
            .order_by(EngagementEvent.occurred_at.desc())
        )
        events = self.db.execute(stmt).scalars().all()

        cutoff_7d = now - timedelta(days=7)
        cutoff_30d = now - timedelta(days=30)
        by_company: Dict[str, List[EngagementEvent]] = defaultdict(list)
        for event in events:
            by_company[event.company_id].append(event)

        for company_id, company_events in by_company.items():
            entry = activity[company_id]
            for event in company_events:
                score = event_score(event.event_type)
                occurred = as_utc(event.occurred_at)
                entry.total_score += score
                if occurred >= cutoff_30d:
                    entry.score_30d += score
                if occurred >= cutoff_7d:
                    entry.score_7d += score
            entry.event_count = len(company_events)
            entry.last_activity_at = as_utc(company_events[0].occurred_at)
            entry.recent_events = company_events[:RECENT_EVENTS_LIMIT]
            entry.heat_level = heat_level(entry.score_7d)

        return activity
