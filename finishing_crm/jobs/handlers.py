"""
Outbox job handlers, one per job_type.

A handler receives the claimed job, its validated payload and a JobContext,
and returns the `result` dict stored on completion. It signals failure by
raising TransientJobError or PermanentJobError (see jobs/errors.py).
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from finishing_crm.jobs.errors import PermanentJobError, TransientJobError
from finishing_crm.lib.consent import ineligibility_reason
from finishing_crm.lib.links import OfferLinkGenerator
from finishing_crm.lib.logging import get_logger
from finishing_crm.models.companies import Company
from finishing_crm.models.contacts import Contact
from finishing_crm.models.outbox import JobType, OutboxJob
from finishing_crm.schemas.outbox import CrmSyncOrderPayload, SendOfferEmailPayload
from finishing_crm.services.crm_client import CrmApiError, CrmClient
from finishing_crm.services.email_provider import EmailProvider, EmailResult, render_offer_email
from finishing_crm.services.engagement_service import EngagementService

logger = get_logger(__name__)


@dataclass
class JobContext:
    """Collaborators handed to every handler."""
    db: Session
    engagement: EngagementService
    email_provider: EmailProvider
    link_generator: OfferLinkGenerator
    crm_client: Optional[CrmClient]
    send_concurrency: int
    now: datetime


Handler = Callable[[OutboxJob, BaseModel, JobContext], Awaitable[Dict[str, Any]]]


async def handle_send_offer_email(
    job: OutboxJob,
    payload: SendOfferEmailPayload,
    ctx: JobContext,
) -> Dict[str, Any]:
    """
    Email the offer to every listed contact that is still eligible.

    Contacts recorded in result.delivered_contact_ids by an earlier attempt are
    not emailed again. Recipients rejected by the provider are reported in
    result.failed; if any recipient hit a retryable failure the whole job is
    retried with the progress so far.
    """
    company = ctx.db.get(Company, payload.company_id)
    if company is None:
        raise PermanentJobError(f"Company {payload.company_id} not found")

    previous = job.result or {}
    delivered: List[str] = list(previous.get("delivered_contact_ids", []))
    failed: Dict[str, str] = dict(previous.get("failed", {}))
    skipped: Dict[str, str] = {}

    contacts = ctx.db.execute(
        select(Contact).where(
            Contact.company_id == payload.company_id,
            Contact.contact_id.in_(payload.contact_ids),
        )
    ).scalars().all()
    by_id = {c.contact_id: c for c in contacts}

    to_send: List[Contact] = []
    for contact_id in dict.fromkeys(payload.contact_ids):
        if contact_id in delivered or contact_id in failed:
            continue
        contact = by_id.get(contact_id)
        if contact is None:
            skipped[contact_id] = "contact not found"
            continue
        # Consent may have been withdrawn since the job was enqueued
        reason = ineligibility_reason(contact)
        if reason:
            skipped[contact_id] = reason
            continue
        to_send.append(contact)

    semaphore = asyncio.Semaphore(ctx.send_concurrency)

    async def deliver(contact: Contact) -> Tuple[Contact, EmailResult]:
        async with semaphore:
            offer_url = ctx.link_generator.build_offer_url(
                company_id=payload.company_id,
                contact_id=contact.contact_id,
                campaign_key=payload.campaign_key,
                offer_key=payload.offer_key,
            )
            message = render_offer_email(
                to=contact.email,
                offer_key=payload.offer_key,
                offer_url=offer_url,
                company_name=company.company_name,
                first_name=contact.first_name,
                contact_name=contact.display_name,
                subject=payload.subject,
                preview=payload.preview,
                custom_message=payload.custom_message,
                tags={"campaign_key": payload.campaign_key, "offer_key": payload.offer_key},
            )
            try:
                return contact, await ctx.email_provider.send(message)
            except Exception as e:
                logger.error(
                    f"Email provider raised for {contact.contact_id}: {e}",
                    extra={"job_id": str(job.job_id)},
                    exc_info=True,
                )
                return contact, EmailResult(success=False, error=str(e), retryable=True)

    outcomes = await asyncio.gather(*(deliver(c) for c in to_send))

    retrying: Dict[str, str] = {}
    for contact, outcome in outcomes:
        if outcome.success:
            delivered.append(contact.contact_id)
            ctx.engagement.record(
                "marketing_email_sent",
                company_id=payload.company_id,
                contact_id=contact.contact_id,
                source="outbox",
                campaign_key=payload.campaign_key,
                offer_key=payload.offer_key,
                meta={"job_id": str(job.job_id), "provider_message_id": outcome.provider_message_id},
            )
        elif outcome.retryable:
            retrying[contact.contact_id] = outcome.error or "unknown error"
        else:
            failed[contact.contact_id] = outcome.error or "unknown error"

    result: Dict[str, Any] = {
        "delivered_contact_ids": delivered,
        "failed": failed,
        "skipped": skipped,
        "sent_count": len(delivered),
    }

    logger.info(
        "Offer email batch processed",
        extra={
            "job_id": str(job.job_id),
            "company_id": payload.company_id,
            "delivered": len(delivered),
            "failed": len(failed),
            "skipped": len(skipped),
            "retrying": len(retrying),
        },
    )

    if retrying:
        raise TransientJobError(
            f"{len(retrying)} recipient(s) failed with a retryable error",
            result={**result, "retrying": retrying},
        )
    return result


async def handle_crm_sync_order(
    job: OutboxJob,
    payload: CrmSyncOrderPayload,
    ctx: JobContext,
) -> Dict[str, Any]:
    """
    Create the invoice for a paid order in the CRM, then record the payment.

    The invoice id is kept in the job result once created, so a retry after a
    failed payment call does not create a second invoice.
    """
    if ctx.crm_client is None:
        logger.info("CRM not configured, skipping order sync", extra={"order_id": payload.order_id})
        return {"skipped": "crm not configured"}

    progress: Dict[str, Any] = dict(job.result or {})
    try:
        if not progress.get("crm_invoice_id"):
            invoice = await ctx.crm_client.create_invoice(
                company_id=payload.company_id,
                order_id=payload.order_id,
                items=[item.model_dump(mode="json") for item in payload.items],
                currency=payload.currency,
            )
            progress["crm_invoice_id"] = invoice["invoice_id"]
            progress["crm_invoice_number"] = invoice.get("invoice_number")

        payment = await ctx.crm_client.record_payment(
            invoice_id=progress["crm_invoice_id"],
            amount=payload.total,
            payment_date=ctx.now.date(),
            reference=payload.payment_reference,
        )
        progress["crm_payment_id"] = payment["payment_id"]
    except CrmApiError as e:
        error_cls = TransientJobError if e.retryable else PermanentJobError
        raise error_cls(str(e), result=progress or None) from e
    except Exception as e:
        if not progress.get("crm_invoice_id"):
            raise
        # The invoice exists; losing its id would create a duplicate on retry
        raise TransientJobError(f"{e.__class__.__name__}: {e}", result=progress) from e

    logger.info(
        "Order synced to CRM",
        extra={"order_id": payload.order_id, "crm_invoice_id": progress["crm_invoice_id"]},
    )
    return progress


HANDLERS: Dict[str, Handler] = {
    JobType.SEND_OFFER_EMAIL.value: handle_send_offer_email,
    JobType.CRM_SYNC_ORDER.value: handle_crm_sync_order,
}
