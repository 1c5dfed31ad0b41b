"""
Integration tests for the outbox admin routes and the cron entry points.

The cron runner uses the real clock, so jobs here are enqueued due now and
reorder candidates are dated relative to today.
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from finishing_crm.models.outbox import JobType, OutboxJob
from finishing_crm.services.email_provider import EmailResult
from finishing_crm.services.outbox_service import OutboxService


@pytest.fixture
def offer_job(db_session, make_company, make_contact):
    company = make_company()
    contact = make_contact(company)
    job = OutboxService(db_session).enqueue(
        JobType.SEND_OFFER_EMAIL,
        {
            "company_id": company.company_id,
            "contact_ids": [contact.contact_id],
            "offer_key": "spring_discs",
            "campaign_key": "spring_2026",
        },
    )
    return job, contact


# ============================================================================
# Test: Health and metrics
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_health_endpoint(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_metrics_endpoint_reports_enqueued_jobs(client, offer_job):
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'outbox_jobs_enqueued_total{job_type="send_offer_email"} 1' in response.text


# ============================================================================
# Test: Admin outbox routes
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_list_and_get_jobs(client, director_headers, offer_job):
    job, _ = offer_job

    response = await client.get("/api/admin/outbox", headers=director_headers)
    assert response.status_code == 200
    jobs = response.json()["jobs"]
    assert [j["job_id"] for j in jobs] == [str(job.job_id)]

    response = await client.get(f"/api/admin/outbox/{job.job_id}", headers=director_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "pending"
    assert data["attempts"] == 0
    assert data["payload"]["offer_key"] == "spring_discs"

    response = await client.get("/api/admin/outbox", params={"status": "dead"}, headers=director_headers)
    assert response.json()["jobs"] == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_job_stats(client, rep_headers, offer_job):
    response = await client.get("/api/admin/outbox/stats", headers=rep_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["stats"]["pending"] == 1
    assert data["stats"]["dead"] == 0
    assert data["total"] == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_retry_pending_job_makes_it_due(client, db_session, director_headers, offer_job):
    job, _ = offer_job
    later = datetime.now(timezone.utc) + timedelta(hours=2)
    db_session.query(OutboxJob).filter_by(job_id=job.job_id).update({"scheduled_for": later})
    db_session.commit()

    response = await client.post(f"/api/admin/outbox/{job.job_id}/retry", headers=director_headers)

    assert response.status_code == 200
    scheduled = datetime.fromisoformat(response.json()["scheduled_for"])
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    assert scheduled < later


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_job_is_404(client, director_headers):
    response = await client.get(f"/api/admin/outbox/{uuid4()}", headers=director_headers)

    assert response.status_code == 404


@pytest.mark.integration
@pytest.mark.asyncio
async def test_outbox_routes_require_auth(client):
    response = await client.get("/api/admin/outbox")

    assert response.status_code == 401


# ============================================================================
# Test: Cron entry points
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
@pytest.mark.parametrize("headers", [{}, {"X-Cron-Secret": "wrong"}])
async def test_cron_requires_secret(client, headers):
    response = await client.post("/api/outbox/run", headers=headers)

    assert response.status_code == 401


@pytest.mark.integration
@pytest.mark.asyncio
async def test_run_outbox_delivers_and_completes(client, cron_headers, director_headers, email_provider, offer_job):
    job, contact = offer_job

    response = await client.post("/api/outbox/run", headers=cron_headers)

    assert response.status_code == 200
    summary = response.json()
    assert summary["processed"] == 1
    assert summary["completed"] == 1
    assert summary["jobs"][0]["job_id"] == str(job.job_id)
    assert email_provider.recipients == [contact.email]
    assert "/m/" in email_provider.sent[0].html

    detail = await client.get(f"/api/admin/outbox/{job.job_id}", headers=director_headers)
    assert detail.json()["status"] == "completed"
    assert detail.json()["result"]["sent_count"] == 1

    # completed jobs are never retried
    retry = await client.post(f"/api/admin/outbox/{job.job_id}/retry", headers=director_headers)
    assert retry.status_code == 409

    # a second sweep finds nothing due
    again = await client.post("/api/outbox/run", headers=cron_headers)
    assert again.json()["processed"] == 0
    assert len(email_provider.sent) == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_run_outbox_schedules_retry_on_transient_failure(client, cron_headers, director_headers, email_provider, offer_job):
    job, contact = offer_job
    email_provider.results[contact.email] = EmailResult(success=False, error="rate limited", retryable=True)

    response = await client.post("/api/outbox/run", headers=cron_headers)

    assert response.json()["retried"] == 1
    detail = (await client.get(f"/api/admin/outbox/{job.job_id}", headers=director_headers)).json()
    assert detail["status"] == "pending"
    assert detail["attempts"] == 1
    assert "retryable error" in detail["last_error"]
    assert detail["result"]["retrying"] == {contact.contact_id: "rate limited"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_generate_reorder_reminders_dedupes(client, cron_headers, make_company, make_contact):
    today = datetime.now(timezone.utc).date()
    overdue = make_company(last_invoice_at=today - timedelta(days=200))
    make_contact(overdue)
    make_company(last_invoice_at=today - timedelta(days=10))

    first = await client.post("/api/cron/generate-reorder-reminders", headers=cron_headers)

    assert first.status_code == 200
    data = first.json()
    assert data["success"] is True
    assert data["companies_found"] == 1
    assert data["jobs_created"] == 1

    second = (await client.post("/api/cron/generate-reorder-reminders", headers=cron_headers)).json()
    assert second["jobs_created"] == 0
    assert second["skipped_recent"] == 1
