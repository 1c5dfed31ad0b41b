"""
Next-best-action suggestions for the sales team.

Two kinds:
- send_reorder_reminder: customer overdue for a reorder with someone we may email
- follow_up_hot_lead: company whose last-7-day engagement is hot or fire
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.lib.consent import find_eligible_contacts
from finishing_crm.lib.time import utc_now
from finishing_crm.models.companies import Company
from finishing_crm.models.engagement_events import EngagementEvent
from finishing_crm.services.engagement_service import EngagementService
from finishing_crm.services.reorder_service import overdue_customers

HEAT_PRIORITY = {"fire": 90, "hot": 70}


@dataclass
class Suggestion:
    action: str
    company_id: str
    company_name: str
    priority: int
    reason: str
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SuggestionService:
    def __init__(self, db: Session, engagement: Optional[EngagementService] = None):
        self.db = db
        self.engagement = engagement or EngagementService(db)

    def suggestions(
        self,
        sales_rep_id: Optional[str] = None,
        now: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[Suggestion]:
        """
        Suggestions sorted by priority (highest first).

        Args:
            sales_rep_id: Restrict to companies owned by this rep (None = all)
        """
        now = now or utc_now()
        items = self._reorder_suggestions(sales_rep_id, now) + self._hot_lead_suggestions(sales_rep_id, now)
        items.sort(key=lambda s: (-s.priority, s.company_name))
        return items[:limit]

    def _reorder_suggestions(self, sales_rep_id: Optional[str], now: datetime) -> List[Suggestion]:
        results = []
        for company in overdue_customers(self.db, now, account_owner=sales_rep_id):
            contacts = find_eligible_contacts(self.db, company.company_id)
            if not contacts:
                continue
            days = (now.date() - company.last_invoice_at).days
            results.append(
                Suggestion(
                    action="send_reorder_reminder",
                    company_id=company.company_id,
                    company_name=company.company_name,
                    priority=min(100, 40 + days // 10),
                    reason=f"No order for {days} days",
                    context={
                        "days_since_last_invoice": days,
                        "eligible_contact_ids": [c.contact_id for c in contacts],
                    },
                )
            )
        return results

    def _hot_lead_suggestions(self, sales_rep_id: Optional[str], now: datetime) -> List[Suggestion]:
        since = now - timedelta(days=7)
        stmt = (
            select(Company)
            .where(
                Company.company_id.in_(
                    select(EngagementEvent.company_id)
                    .where(EngagementEvent.occurred_at >= since, EngagementEvent.company_id.is_not(None))
                    .distinct()
                )
            )
        )
        if sales_rep_id:
            stmt = stmt.where(Company.account_owner == sales_rep_id)
        companies = {c.company_id: c for c in self.db.execute(stmt).scalars().all()}
        activity = self.engagement.company_activity(companies.keys(), now=now)

        results = []
        for company_id, entry in activity.items():
            base = HEAT_PRIORITY.get(entry.heat_level)
            if base is None:
                continue
            company = companies[company_id]
            results.append(
                Suggestion(
                    action="follow_up_hot_lead",
                    company_id=company_id,
                    company_name=company.company_name,
                    priority=min(100, base + entry.score_7d // 20),
                    reason=f"{entry.heat_level.capitalize()} engagement (7-day score {entry.score_7d})",
                    context={
                        "heat_level": entry.heat_level,
                        "score_7d": entry.score_7d,
                        "last_activity_at": entry.last_activity_at.isoformat() if entry.last_activity_at else None,
                    },
                )
            )
        return results
