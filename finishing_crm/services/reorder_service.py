"""
Reorder reminder generator.

Finds customers whose last invoice is older than `reorder_threshold_days`
and queues a `reorder_90_day` offer email for each. A company reminded within
`reorder_dedupe_days` (a `reorder_reminder_queued` engagement event) is
skipped. Runs daily from the scheduler and from the cron endpoint.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finishing_crm.lib.consent import find_eligible_contacts
from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.settings import settings
from finishing_crm.lib.time import utc_now
from finishing_crm.models.companies import Company, CompanyCategory
from finishing_crm.models.outbox import JobType
from finishing_crm.schemas.outbox import SendOfferEmailPayload
from finishing_crm.services.engagement_service import EngagementService
from finishing_crm.services.outbox_service import OutboxService

logger = get_logger(__name__)

REORDER_OFFER_KEY = "reorder_90_day"
REMINDER_EVENT = "reorder_reminder_queued"


@dataclass
class ReorderRunResult:
    started_at: datetime
    companies_found: int = 0
    jobs_created: int = 0
    skipped_no_contacts: int = 0
    skipped_recent: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        return data


def overdue_customers(
    db: Session,
    now: datetime,
    limit: Optional[int] = None,
    account_owner: Optional[str] = None,
) -> List[Company]:
    """Customers whose last invoice predates the reorder threshold, oldest first."""
    threshold = (now - timedelta(days=settings.reorder_threshold_days)).date()
    stmt = select(Company).where(
        Company.category == CompanyCategory.CUSTOMER,
        Company.last_invoice_at.is_not(None),
        Company.last_invoice_at < threshold,
    )
    # Filter before the limit so one rep's list is not cut short by others' companies
    if account_owner:
        stmt = stmt.where(Company.account_owner == account_owner)
    stmt = stmt.order_by(Company.last_invoice_at).limit(limit or settings.reorder_company_limit)
    return list(db.execute(stmt).scalars().all())


class ReorderReminderService:
    def __init__(
        self,
        db: Session,
        outbox: Optional[OutboxService] = None,
        engagement: Optional[EngagementService] = None,
    ):
        self.db = db
        self.outbox = outbox or OutboxService(db)
        self.engagement = engagement or EngagementService(db)

    def generate(self, now: Optional[datetime] = None) -> ReorderRunResult:
        """
        Queue reorder reminder jobs. Per-company failures are collected, not raised.
        """
        now = now or utc_now()
        result = ReorderRunResult(started_at=now)
        campaign_key = f"auto_reorder_{now:%Y-%m-%d}"
        dedupe_since = now - timedelta(days=settings.reorder_dedupe_days)

        companies = overdue_customers(self.db, now)
        result.companies_found = len(companies)

        for company in companies:
            contacts = find_eligible_contacts(self.db, company.company_id)
            if not contacts:
                result.skipped_no_contacts += 1
                continue

            if self.engagement.has_recent_event(company.company_id, REMINDER_EVENT, dedupe_since):
                result.skipped_recent += 1
                continue

            payload = SendOfferEmailPayload(
                company_id=company.company_id,
                contact_ids=[c.contact_id for c in contacts],
                offer_key=REORDER_OFFER_KEY,
                campaign_key=campaign_key,
            )
            try:
                job = self.outbox.enqueue(JobType.SEND_OFFER_EMAIL, payload)
            except SQLAlchemyError as e:
                result.errors.append(f"{company.company_name}: job creation failed - {e}")
                continue

            self.engagement.record(
                REMINDER_EVENT,
                company_id=company.company_id,
                source="cron",
                campaign_key=campaign_key,
                offer_key=REORDER_OFFER_KEY,
                meta={"job_id": str(job.job_id), "contact_count": len(contacts)},
                occurred_at=now,
            )
            result.jobs_created += 1

        logger.info(
            "Reorder reminders generated",
            extra={
                "companies_found": result.companies_found,
                "jobs_created": result.jobs_created,
                "skipped_recent": result.skipped_recent,
                "skipped_no_contacts": result.skipped_no_contacts,
                "error_count": len(result.errors),
            },
        )
        return result
