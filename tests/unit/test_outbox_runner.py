"""
Unit tests for the outbox runner and job handlers.

Tests cover:
- Offer email jobs: delivery, partial progress, re-run idempotency
- Consent re-check at send time
- Retry / dead-letter outcomes and audit events
- CRM order sync progress across retries
- Batch limits, stale claims and scheduler registration
"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from finishing_crm.jobs.outbox_runner import (
    OutboxRunner,
    list_due_jobs,
    register_outbox_jobs,
    run_outbox_sync,
    run_reorder_reminders_sync,
    trigger_outbox_manual,
)
from finishing_crm.jobs.scheduler import SchedulerManager
from finishing_crm.lib.links import OfferLinkGenerator
from finishing_crm.lib.metrics import get_metrics_collector
from finishing_crm.models.contacts import MarketingStatus
from finishing_crm.models.engagement_events import EngagementEvent
from finishing_crm.models.outbox import JobStatus, JobType, OutboxJob
from finishing_crm.services.crm_client import CrmApiError, CrmClient
from finishing_crm.services.email_provider import EmailResult
from finishing_crm.services.outbox_service import OutboxService

from conftest import FakeCrmClient, FakeEmailProvider


@pytest.fixture
def outbox(db_session):
    return OutboxService(db_session, default_max_attempts=3, backoff_base_minutes=5, backoff_max_minutes=60)


@pytest.fixture
def link_generator():
    return OfferLinkGenerator(secret_key="test-secret", base_url="https://shop.test")


def make_runner(db_session, outbox, link_generator, provider=None, crm_client=None, **kwargs):
    return OutboxRunner(
        db_session,
        email_provider=provider or FakeEmailProvider(),
        crm_client=crm_client,
        link_generator=link_generator,
        outbox=outbox,
        **kwargs,
    )


def enqueue_offer(outbox, company, contacts, now, **kwargs):
    return outbox.enqueue(
        JobType.SEND_OFFER_EMAIL,
        {
            "company_id": company.company_id,
            "contact_ids": [c.contact_id for c in contacts],
            "offer_key": "reorder_90_day",
            "campaign_key": "auto_reorder_2026-03-16",
        },
        scheduled_for=now,
        **kwargs,
    )


def events_of_type(db_session, event_type):
    return db_session.query(EngagementEvent).filter(EngagementEvent.event_type == event_type).all()


# ============================================================================
# Test: Offer email delivery
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_completes_offer_job(db_session, outbox, link_generator, make_company, make_contact, now):
    company = make_company(company_name="Acme Finishing")
    contacts = [make_contact(company), make_contact(company)]
    job = enqueue_offer(outbox, company, contacts, now)
    provider = FakeEmailProvider()

    summary = await make_runner(db_session, outbox, link_generator, provider).run(now=now)

    assert summary.processed == 1
    assert summary.completed == 1
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.attempts == 0
    assert sorted(stored.result["delivered_contact_ids"]) == sorted(c.contact_id for c in contacts)
    assert stored.result["sent_count"] == 2
    assert sorted(provider.recipients) == sorted(c.email for c in contacts)
    assert all("https://shop.test/m/" in m.text for m in provider.sent)
    assert len(events_of_type(db_session, "marketing_email_sent")) == 2
    assert len(events_of_type(db_session, "outbox_job_completed")) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_offer_links_identify_recipient(db_session, outbox, link_generator, make_company, make_contact, now):
    company = make_company()
    contact = make_contact(company)
    enqueue_offer(outbox, company, [contact], now)
    provider = FakeEmailProvider()

    await make_runner(db_session, outbox, link_generator, provider).run(now=now)

    token = provider.sent[0].text.split("/m/")[1].strip()
    claims = link_generator.verify_offer_token(token)
    assert claims["company_id"] == company.company_id
    assert claims["contact_id"] == contact.contact_id
    assert claims["offer_key"] == "reorder_90_day"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_run_does_not_resend(db_session, outbox, link_generator, make_company, make_contact, now):
    company = make_company()
    enqueue_offer(outbox, company, [make_contact(company)], now)
    provider = FakeEmailProvider()
    runner = make_runner(db_session, outbox, link_generator, provider)

    await runner.run(now=now)
    second = await runner.run(now=now + timedelta(hours=1))

    assert second.processed == 0
    assert len(provider.sent) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transient_failure_keeps_progress_and_retries_only_remaining(
    db_session, outbox, link_generator, make_company, make_contact, now
):
    company = make_company()
    ok = make_contact(company)
    flaky = make_contact(company)
    job = enqueue_offer(outbox, company, [ok, flaky], now)

    provider = FakeEmailProvider({flaky.email: EmailResult(success=False, error="HTTP 503", retryable=True)})
    summary = await make_runner(db_session, outbox, link_generator, provider).run(now=now)

    assert summary.retried == 1
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.result["delivered_contact_ids"] == [ok.contact_id]
    assert flaky.contact_id in stored.result["retrying"]
    assert "retryable" in stored.last_error

    recovered = FakeEmailProvider()
    later = now + timedelta(minutes=5)
    await make_runner(db_session, outbox, link_generator, recovered).run(now=later)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert recovered.recipients == [flaky.email]
    assert sorted(stored.result["delivered_contact_ids"]) == sorted([ok.contact_id, flaky.contact_id])


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_recipient_is_reported_not_retried(
    db_session, outbox, link_generator, make_company, make_contact, now
):
    company = make_company()
    good = make_contact(company)
    bad = make_contact(company)
    job = enqueue_offer(outbox, company, [good, bad], now)

    provider = FakeEmailProvider({bad.email: EmailResult(success=False, error="invalid address")})
    await make_runner(db_session, outbox, link_generator, provider).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result["failed"] == {bad.contact_id: "invalid address"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_withdrawn_consent_is_skipped_at_send_time(
    db_session, outbox, link_generator, make_company, make_contact, now
):
    company = make_company()
    stays = make_contact(company)
    leaves = make_contact(company)
    job = enqueue_offer(outbox, company, [stays, leaves], now)

    leaves.marketing_status = MarketingStatus.UNSUBSCRIBED
    db_session.commit()

    provider = FakeEmailProvider()
    await make_runner(db_session, outbox, link_generator, provider).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert provider.recipients == [stays.email]
    assert stored.result["skipped"] == {leaves.contact_id: "marketing_status: unsubscribed"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_provider_exception_counts_as_retryable(
    db_session, outbox, link_generator, make_company, make_contact, now
):
    class ExplodingProvider(FakeEmailProvider):
        async def send(self, message):
            raise ConnectionError("socket closed")

    company = make_company()
    job = enqueue_offer(outbox, company, [make_contact(company)], now)

    await make_runner(db_session, outbox, link_generator, ExplodingProvider()).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1


# ============================================================================
# Test: Dead-lettering
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_job_is_dead_after_max_attempts(db_session, outbox, link_generator, make_company, make_contact, now):
    company = make_company()
    contact = make_contact(company)
    job = enqueue_offer(outbox, company, [contact], now, max_attempts=2)
    provider = FakeEmailProvider({contact.email: EmailResult(success=False, error="HTTP 500", retryable=True)})
    runner = make_runner(db_session, outbox, link_generator, provider)

    await runner.run(now=now)
    summary = await runner.run(now=now + timedelta(hours=1))

    assert summary.dead == 1
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.DEAD
    assert stored.attempts == 2
    assert len(events_of_type(db_session, "outbox_job_retry_scheduled")) == 1
    assert len(events_of_type(db_session, "outbox_job_dead")) == 1

    metrics = get_metrics_collector()
    assert metrics.get_counter_value(
        "outbox_jobs_processed_total", {"job_type": "send_offer_email", "outcome": "dead"}
    ) == 1

    third = await runner.run(now=now + timedelta(days=2))
    assert third.processed == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_company_is_permanent(db_session, outbox, link_generator, now):
    job = outbox.enqueue(
        JobType.SEND_OFFER_EMAIL,
        {"company_id": "GONE", "contact_ids": ["C1"], "offer_key": "x", "campaign_key": "y"},
        scheduled_for=now,
    )

    await make_runner(db_session, outbox, link_generator).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.DEAD
    assert stored.attempts == 1
    assert "GONE" in stored.last_error


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_job_type_row_is_dead_lettered(db_session, outbox, link_generator, now):
    job = OutboxJob(job_type="send_fax", status=JobStatus.PENDING, payload={}, scheduled_for=now)
    db_session.add(job)
    db_session.commit()

    await make_runner(db_session, outbox, link_generator).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.DEAD
    assert "Unknown job type" in stored.last_error


@pytest.mark.unit
@pytest.mark.asyncio
async def test_malformed_payload_row_is_dead_lettered(db_session, outbox, link_generator, now):
    job = OutboxJob(job_type="send_offer_email", status=JobStatus.PENDING, payload={"company_id": "X"}, scheduled_for=now)
    db_session.add(job)
    db_session.commit()

    await make_runner(db_session, outbox, link_generator).run(now=now)

    assert outbox.get_job(job.job_id).status == JobStatus.DEAD


@pytest.mark.unit
@pytest.mark.asyncio
async def test_non_object_payload_is_dead_lettered_and_sweep_continues(
    db_session, outbox, link_generator, make_company, make_contact, now
):
    bad = OutboxJob(
        job_type="send_offer_email",
        status=JobStatus.PENDING,
        payload=["not", "an", "object"],
        scheduled_for=now - timedelta(minutes=1),
    )
    db_session.add(bad)
    db_session.commit()
    company = make_company()
    good = enqueue_offer(outbox, company, [make_contact(company)], now)

    summary = await make_runner(db_session, outbox, link_generator).run(now=now)

    assert summary.processed == 2
    assert summary.dead == 1
    assert summary.completed == 1
    assert outbox.get_job(bad.job_id).status == JobStatus.DEAD
    assert outbox.get_job(good.job_id).status == JobStatus.COMPLETED
    dead_events = events_of_type(db_session, "outbox_job_dead")
    assert len(dead_events) == 1
    assert dead_events[0].company_id is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unexpected_handler_error_is_retried(
    db_session, outbox, link_generator, make_company, make_contact, now, monkeypatch
):
    from finishing_crm.jobs import outbox_runner

    async def broken_handler(job, payload, ctx):
        raise RuntimeError("unexpected")

    monkeypatch.setitem(outbox_runner.HANDLERS, "send_offer_email", broken_handler)
    company = make_company()
    job = enqueue_offer(outbox, company, [make_contact(company)], now)

    await make_runner(db_session, outbox, link_generator).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.last_error == "RuntimeError: unexpected"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_store_error_in_handler_is_rolled_back_before_recording_failure(
    db_session, outbox, link_generator, make_company, make_contact, now, monkeypatch
):
    from finishing_crm.jobs import outbox_runner

    async def store_failure_handler(job, payload, ctx):
        ctx.db.add(EngagementEvent(event_type="half_written", source="outbox"))
        raise SQLAlchemyError("server closed the connection unexpectedly")

    monkeypatch.setitem(outbox_runner.HANDLERS, "send_offer_email", store_failure_handler)
    company = make_company()
    job = enqueue_offer(outbox, company, [make_contact(company)], now)

    summary = await make_runner(db_session, outbox, link_generator).run(now=now)

    assert summary.retried == 1
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.last_error.startswith("SQLAlchemyError: server closed the connection")
    assert events_of_type(db_session, "half_written") == []


# ============================================================================
# Test: CRM order sync
# ============================================================================


def enqueue_order(outbox, now):
    return outbox.enqueue(
        JobType.CRM_SYNC_ORDER,
        {
            "order_id": "ORD-1",
            "company_id": "COMP001",
            "items": [{"product_code": "SANDER-1", "quantity": 2, "unit_price": "150.00"}],
            "total": "300.00",
            "payment_reference": "pi_123",
        },
        scheduled_for=now,
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crm_sync_creates_invoice_once_across_retries(db_session, outbox, link_generator, now):
    crm = FakeCrmClient(payment_errors=[CrmApiError("CRM unavailable", status_code=503)])
    job = enqueue_order(outbox, now)
    runner = make_runner(db_session, outbox, link_generator, crm_client=crm)

    await runner.run(now=now)
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.result["crm_invoice_id"] == "INV-1"

    await runner.run(now=now + timedelta(minutes=10))
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert len(crm.invoices) == 1
    assert crm.payments == [{"invoice_id": "INV-1", "amount": Decimal("300.00")}]
    assert stored.result["crm_payment_id"] == "PAY-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crm_payment_reply_without_json_keeps_invoice_for_retry(db_session, outbox, link_generator, now):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/invoices":
            return httpx.Response(201, json={"invoice": {"invoice_id": "9001", "invoice_number": "INV-0001"}})
        if calls.count("/customerpayments") == 1:
            return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})
        return httpx.Response(201, json={"payment": {"payment_id": "P1"}})

    crm = CrmClient(base_url="https://crm.test", api_token="tok", transport=httpx.MockTransport(handler))
    job = enqueue_order(outbox, now)
    runner = make_runner(db_session, outbox, link_generator, crm_client=crm)

    await runner.run(now=now)
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.result["crm_invoice_id"] == "9001"

    await runner.run(now=now + timedelta(minutes=10))
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result["crm_payment_id"] == "P1"
    assert calls == ["/invoices", "/customerpayments", "/customerpayments"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crm_unexpected_error_after_invoice_keeps_progress(db_session, outbox, link_generator, now):
    crm = FakeCrmClient(payment_errors=[KeyError("payment_id")])
    job = enqueue_order(outbox, now)

    await make_runner(db_session, outbox, link_generator, crm_client=crm).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.result["crm_invoice_id"] == "INV-1"
    assert stored.last_error.startswith("KeyError")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crm_client_error_is_permanent(db_session, outbox, link_generator, now):
    crm = FakeCrmClient(payment_errors=[CrmApiError("Invalid amount", status_code=400)])
    job = enqueue_order(outbox, now)

    await make_runner(db_session, outbox, link_generator, crm_client=crm).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.DEAD
    assert stored.result["crm_invoice_id"] == "INV-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crm_sync_without_client_completes_as_skipped(db_session, outbox, link_generator, now):
    job = enqueue_order(outbox, now)

    await make_runner(db_session, outbox, link_generator, crm_client=None).run(now=now)

    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.result == {"skipped": "crm not configured"}


# ============================================================================
# Test: Batching and stale claims
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_batch_size_limits_jobs_per_run(db_session, outbox, link_generator, make_company, make_contact, now):
    company = make_company()
    contact = make_contact(company)
    for _ in range(3):
        enqueue_offer(outbox, company, [contact], now)

    summary = await make_runner(db_session, outbox, link_generator, batch_size=2).run(now=now)

    assert summary.processed == 2
    assert len(list_due_jobs(db_session, now, limit=10)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_run_requeues_stale_processing_job(db_session, outbox, link_generator, make_company, make_contact, now):
    company = make_company()
    job = enqueue_offer(outbox, company, [make_contact(company)], now)
    outbox.claim_next(now, timedelta(minutes=5))

    summary = await make_runner(db_session, outbox, link_generator).run(now=now + timedelta(hours=1))

    # requeued with backoff, so not yet due again in the same run
    assert summary.requeued == 1
    stored = outbox.get_job(job.job_id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 1


@pytest.mark.unit
def test_summary_to_dict_is_json_friendly(db_session, outbox, link_generator, now):
    summary = asyncio.run(make_runner(db_session, outbox, link_generator).run(now=now))
    data = summary.to_dict()

    assert data["processed"] == 0
    assert isinstance(data["started_at"], str)
    assert isinstance(data["finished_at"], str)


@pytest.fixture
def test_db_context(monkeypatch, db_session):
    @contextmanager
    def fake_context():
        yield db_session

    monkeypatch.setattr("finishing_crm.jobs.outbox_runner.get_db_context", fake_context)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_manual_trigger_dry_run_lists_due_jobs(test_db_context, outbox, make_company, make_contact, now):
    company = make_company()
    job = enqueue_offer(outbox, company, [make_contact(company)], now)

    preview = await trigger_outbox_manual(dry_run=True)

    assert preview == {"dry_run": True, "total_due": 1, "job_ids": [str(job.job_id)]}
    assert outbox.get_job(job.job_id).status == JobStatus.PENDING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_manual_trigger_runs_outbox(test_db_context, outbox, make_company, make_contact, now):
    company = make_company()
    job = enqueue_offer(outbox, company, [make_contact(company)], now)

    summary = await trigger_outbox_manual()

    assert summary["completed"] == 1
    assert outbox.get_job(job.job_id).status == JobStatus.COMPLETED


# ============================================================================
# Test: Scheduler wiring
# ============================================================================


@pytest.mark.unit
def test_register_outbox_jobs_adds_sweep_and_daily_reminders():
    manager = SchedulerManager()

    register_outbox_jobs(manager)

    job_ids = {job.id for job in manager.get_jobs()}
    assert job_ids == {"outbox_sweep", "reorder_reminders_daily"}
    sweep = manager.scheduler.get_job("outbox_sweep")
    assert sweep.func is run_outbox_sync
    assert manager.scheduler.get_job("reorder_reminders_daily").func is run_reorder_reminders_sync


@pytest.mark.unit
def test_register_outbox_jobs_twice_keeps_one_job_per_id():
    manager = SchedulerManager()

    register_outbox_jobs(manager)
    register_outbox_jobs(manager)

    assert sorted(job.id for job in manager.get_jobs()) == ["outbox_sweep", "reorder_reminders_daily"]
