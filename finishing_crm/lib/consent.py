"""
Marketing consent checks for outbound email.

A contact may receive marketing email when:
1. marketing_status is 'subscribed'
2. GDPR consent has been recorded (gdpr_consent_at is set)
3. An email address is on file

Producers filter recipients with these helpers before enqueueing; the offer
email handler applies the same check again at send time so that contacts who
unsubscribed in between are skipped.
"""
from typing import Iterable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.lib.logging import get_logger
from finishing_crm.models.contacts import Contact, MarketingStatus

logger = get_logger(__name__)


def ineligibility_reason(contact: Contact) -> Optional[str]:
    """
    Explain why a contact cannot receive marketing email.

    Returns:
        Reason string, or None if the contact is eligible
    """
    if contact.marketing_status != MarketingStatus.SUBSCRIBED:
        status = getattr(contact.marketing_status, "value", contact.marketing_status)
        return f"marketing_status: {status}"
    if contact.gdpr_consent_at is None:
        return "no GDPR consent"
    if not contact.email:
        return "no email address"
    return None


def split_by_consent(contacts: Iterable[Contact]) -> tuple[list[Contact], list[tuple[Contact, str]]]:
    """
    Partition contacts into eligible and ineligible (with reason).
    """
    eligible: list[Contact] = []
    ineligible: list[tuple[Contact, str]] = []
    for contact in contacts:
        reason = ineligibility_reason(contact)
        if reason is None:
            eligible.append(contact)
        else:
            ineligible.append((contact, reason))
    return eligible, ineligible


def find_eligible_contacts(
    db: Session,
    company_id: str,
    contact_ids: Optional[Sequence[str]] = None,
) -> list[Contact]:
    """
    Load contacts of a company that may receive marketing email.

    Args:
        db: Database session
        company_id: Company to search
        contact_ids: Optional restriction to these contacts

    Returns:
        Eligible contacts ordered by contact_id
    """
    stmt = (
        select(Contact)
        .where(
            Contact.company_id == company_id,
            Contact.marketing_status == MarketingStatus.SUBSCRIBED,
            Contact.gdpr_consent_at.is_not(None),
            Contact.email.is_not(None),
            Contact.email != "",
        )
        .order_by(Contact.contact_id)
    )
    if contact_ids is not None:
        stmt = stmt.where(Contact.contact_id.in_(list(contact_ids)))

    contacts = list(db.execute(stmt).scalars().all())

    logger.debug(
        "Eligible contacts loaded",
        extra={"company_id": company_id, "eligible_count": len(contacts)},
    )
    return contacts
