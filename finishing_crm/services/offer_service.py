"""
One-off offer sends to selected contacts of a company.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.lib.consent import split_by_consent
from finishing_crm.lib.logging import get_logger
from finishing_crm.lib.time import utc_now
from finishing_crm.models.companies import Company
from finishing_crm.models.contacts import Contact
from finishing_crm.models.outbox import JobType
from finishing_crm.schemas.outbox import SendOfferEmailPayload
from finishing_crm.services.errors import InvalidRequestError, NoEligibleRecipientsError, NotFoundError
from finishing_crm.services.outbox_service import OutboxService

logger = get_logger(__name__)


@dataclass
class OfferSendResult:
    job_id: str
    campaign_key: str
    eligible_count: int
    ineligible_reasons: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class OfferService:
    def __init__(self, db: Session, outbox: Optional[OutboxService] = None):
        self.db = db
        self.outbox = outbox or OutboxService(db)

    def send_offer(
        self,
        company_id: str,
        contact_ids: Sequence[str],
        offer_key: str,
        campaign_key: Optional[str] = None,
        custom_message: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> OfferSendResult:
        """
        Queue an offer email for the eligible subset of contact_ids.

        Raises:
            InvalidRequestError: No contacts selected
            NotFoundError: Company or contacts missing
            NoEligibleRecipientsError: None of the contacts may receive marketing
        """
        if not contact_ids:
            raise InvalidRequestError("contact_ids must not be empty")

        if self.db.get(Company, company_id) is None:
            raise NotFoundError("Company", company_id)

        contacts: List[Contact] = list(
            self.db.execute(
                select(Contact)
                .where(Contact.company_id == company_id, Contact.contact_id.in_(list(contact_ids)))
                .order_by(Contact.contact_id)
            ).scalars().all()
        )
        if not contacts:
            raise NotFoundError("Contacts")

        eligible, ineligible = split_by_consent(contacts)
        reasons = {contact.contact_id: reason for contact, reason in ineligible}
        if not eligible:
            raise NoEligibleRecipientsError(
                "No eligible contacts (check consent and marketing status)",
                {"ineligible_reasons": reasons},
            )

        campaign_key = campaign_key or f"manual_{offer_key}_{utc_now():%Y%m%d%H%M%S}"
        payload = SendOfferEmailPayload(
            company_id=company_id,
            contact_ids=[c.contact_id for c in eligible],
            offer_key=offer_key,
            campaign_key=campaign_key,
            subject=subject,
            custom_message=custom_message,
        )
        job = self.outbox.enqueue(JobType.SEND_OFFER_EMAIL, payload)

        logger.info(
            "Offer queued",
            extra={
                "company_id": company_id,
                "offer_key": offer_key,
                "eligible": len(eligible),
                "ineligible": len(ineligible),
            },
        )
        return OfferSendResult(
            job_id=str(job.job_id),
            campaign_key=campaign_key,
            eligible_count=len(eligible),
            ineligible_reasons=reasons,
        )
