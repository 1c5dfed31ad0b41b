"""
Campaign producer: one send_offer_email job per company.

Only contacts eligible for marketing email are included. Companies with no
eligible contacts are skipped, so N companies with M of them lacking
eligible contacts produce N - M jobs. Each company is inserted on its own;
a failed insert is reported for that company and the rest still go through.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from finishing_crm.lib.consent import find_eligible_contacts
from finishing_crm.lib.logging import get_logger
from finishing_crm.models.companies import Company
from finishing_crm.models.outbox import JobType
from finishing_crm.schemas.outbox import SendOfferEmailPayload
from finishing_crm.services.errors import InvalidRequestError
from finishing_crm.services.outbox_service import OutboxService

logger = get_logger(__name__)


@dataclass
class CompanyOutcome:
    company_id: str
    status: str  # queued | skipped | failed
    job_id: Optional[str] = None
    contact_count: int = 0
    reason: Optional[str] = None


@dataclass
class CampaignEnqueueResult:
    campaign_key: str
    queued: int = 0
    skipped: int = 0
    failed: int = 0
    companies: List[CompanyOutcome] = field(default_factory=list)

    def add(self, outcome: CompanyOutcome) -> None:
        self.companies.append(outcome)
        if outcome.status == "queued":
            self.queued += 1
        elif outcome.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CampaignService:
    def __init__(self, db: Session, outbox: Optional[OutboxService] = None):
        self.db = db
        self.outbox = outbox or OutboxService(db)

    def enqueue_campaign(
        self,
        company_ids: Sequence[str],
        campaign_key: str,
        offer_key: str,
        subject: Optional[str] = None,
        preview: Optional[str] = None,
    ) -> CampaignEnqueueResult:
        """
        Enqueue one offer email job per company with eligible contacts.

        Raises:
            InvalidRequestError: No companies given
        """
        ids = [cid for cid in dict.fromkeys(company_ids) if cid]
        if not ids:
            raise InvalidRequestError("company_ids must not be empty")

        result = CampaignEnqueueResult(campaign_key=campaign_key)

        for company_id in ids:
            if self.db.get(Company, company_id) is None:
                result.add(CompanyOutcome(company_id=company_id, status="skipped", reason="company not found"))
                continue

            contacts = find_eligible_contacts(self.db, company_id)
            if not contacts:
                result.add(CompanyOutcome(company_id=company_id, status="skipped", reason="no eligible contacts"))
                continue

            payload = SendOfferEmailPayload(
                company_id=company_id,
                contact_ids=[c.contact_id for c in contacts],
                offer_key=offer_key,
                campaign_key=campaign_key,
                subject=subject,
                preview=preview,
            )
            try:
                job = self.outbox.enqueue(JobType.SEND_OFFER_EMAIL, payload)
            except SQLAlchemyError as e:
                result.add(CompanyOutcome(company_id=company_id, status="failed", reason=str(e)))
                continue

            result.add(
                CompanyOutcome(
                    company_id=company_id,
                    status="queued",
                    job_id=str(job.job_id),
                    contact_count=len(contacts),
                )
            )

        logger.info(
            "Campaign enqueued",
            extra={
                "campaign_key": campaign_key,
                "queued": result.queued,
                "skipped": result.skipped,
                "failed": result.failed,
            },
        )
        return result
