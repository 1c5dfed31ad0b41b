"""
Integration tests for the back office admin routes.
"""
from datetime import datetime, timedelta, timezone

import pytest

from conftest import auth_headers
from finishing_crm.models.contacts import MarketingStatus
from finishing_crm.models.distributors import Distributor, PricingTier
from finishing_crm.models.outbox import OutboxJob
from finishing_crm.models.users import UserRole


# ============================================================================
# Test: Users (directors only)
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_rep_cannot_manage_users(client, rep_headers):
    response = await client.get("/api/admin/users", headers=rep_headers)

    assert response.status_code == 403


@pytest.mark.integration
@pytest.mark.asyncio
async def test_director_creates_and_updates_user(client, director_headers):
    response = await client.post(
        "/api/admin/users",
        json={"email": "New.Rep@Example.com", "role": "sales_rep", "sales_rep_id": "REP5"},
        headers=director_headers,
    )

    assert response.status_code == 201
    user = response.json()
    assert user["email"] == "new.rep@example.com"
    assert user["is_active"] is True

    duplicate = await client.post("/api/admin/users", json={"email": "new.rep@example.com"}, headers=director_headers)
    assert duplicate.status_code == 409

    updated = await client.put(f"/api/admin/users/{user['user_id']}", json={"is_active": False}, headers=director_headers)
    assert updated.status_code == 200
    assert updated.json()["is_active"] is False

    listing = await client.get("/api/admin/users", headers=director_headers)
    assert {u["email"] for u in listing.json()["users"]} == {"director@example.com", "new.rep@example.com"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_deactivated_user_token_is_rejected(client, make_user):
    user = make_user(role=UserRole.DIRECTOR, email="gone@example.com", is_active=False)

    response = await client.get("/api/admin/users", headers=auth_headers(user))

    assert response.status_code == 401


# ============================================================================
# Test: Companies and contacts
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_company_and_contact_lifecycle(client, rep_headers):
    created = await client.post(
        "/api/admin/companies",
        json={"company_id": "ACME", "company_name": "Acme Joinery", "category": "customer", "account_owner": "REP1"},
        headers=rep_headers,
    )
    assert created.status_code == 201

    again = await client.post(
        "/api/admin/companies",
        json={"company_id": "ACME", "company_name": "Acme again"},
        headers=rep_headers,
    )
    assert again.status_code == 409

    contact = await client.post(
        "/api/admin/contacts",
        json={"company_id": "ACME", "email": "Jo@Acme.test", "full_name": "Jo Bloggs"},
        headers=rep_headers,
    )
    assert contact.status_code == 201
    contact_id = contact.json()["contact_id"]
    assert contact.json()["marketing_status"] == "pending"

    consented = await client.put(
        f"/api/admin/contacts/{contact_id}",
        json={"marketing_status": "subscribed", "gdpr_consent": True},
        headers=rep_headers,
    )
    assert consented.status_code == 200
    assert consented.json()["gdpr_consent_at"] is not None

    contacts = await client.get("/api/admin/companies/ACME/contacts", headers=rep_headers)
    assert [c["email"] for c in contacts.json()["contacts"]] == ["jo@acme.test"]

    search = await client.get("/api/admin/companies", params={"search": "joinery"}, headers=rep_headers)
    assert [c["company_id"] for c in search.json()["companies"]] == ["ACME"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_company_is_404(client, rep_headers):
    response = await client.get("/api/admin/companies/NOPE", headers=rep_headers)

    assert response.status_code == 404


# ============================================================================
# Test: Distributors
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_distributor_listing_and_bulk_update(client, db_session, director_headers):
    db_session.add_all(
        [
            Distributor(code="D/001", company_name="Alpha Supplies", pricing_tier=PricingTier.TIER_2),
            Distributor(code="D002", company_name="Beta Trade"),
        ]
    )
    db_session.commit()

    listing = await client.get("/api/admin/distributors", headers=director_headers)
    rows = {d["code"]: d for d in listing.json()["distributors"]}
    assert rows["D/001"]["portal_path"] == "/portal/distributor/D%2F001"
    assert rows["D/001"]["discount_percent"] == 30
    assert rows["D002"]["pricing_tier"] is None

    update = await client.post(
        "/api/admin/distributors/bulk-update",
        json={"distributors": [{"code": "D002", "pricing_tier": "tier_1"}, {"code": "MISSING", "pricing_tier": "tier_3"}]},
        headers=director_headers,
    )
    assert update.status_code == 200
    assert update.json() == {"updated": 1, "unknown_codes": ["MISSING"]}

    tiered = await client.get("/api/admin/distributors", params={"tier": "tier_1"}, headers=director_headers)
    assert [d["code"] for d in tiered.json()["distributors"]] == ["D002"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_bulk_update_rejects_empty_selection(client, director_headers):
    response = await client.post("/api/admin/distributors/bulk-update", json={"distributors": []}, headers=director_headers)

    assert response.status_code == 400


# ============================================================================
# Test: Subscriptions
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_subscription_price_ratchet(client, rep_headers, make_company):
    company = make_company()

    created = await client.post(
        "/api/admin/subscriptions",
        json={"company_id": company.company_id, "monthly_price": "49.00", "tools": ["SANDER-1"]},
        headers=rep_headers,
    )
    assert created.status_code == 201
    subscription_id = created.json()["subscription_id"]
    assert created.json()["status"] == "trial"

    lowered = await client.post(
        f"/api/admin/subscriptions/{subscription_id}/price", json={"new_price": "29.00"}, headers=rep_headers
    )
    assert lowered.status_code == 200
    assert lowered.json()["ratchet_warning"] is True
    assert float(lowered.json()["subscription"]["ratchet_max"]) == 49.0

    anomalies = await client.get("/api/admin/subscriptions/anomalies", headers=rep_headers)
    assert [s["subscription_id"] for s in anomalies.json()["subscriptions"]] == [subscription_id]

    activated = await client.post(f"/api/admin/subscriptions/{subscription_id}/activate", headers=rep_headers)
    assert activated.json()["status"] == "active"
    twice = await client.post(f"/api/admin/subscriptions/{subscription_id}/activate", headers=rep_headers)
    assert twice.status_code == 409

    cancelled = await client.post(
        f"/api/admin/subscriptions/{subscription_id}/cancel", json={"reason": "closed down"}, headers=rep_headers
    )
    assert cancelled.json()["status"] == "cancelled"
    assert cancelled.json()["cancellation_reason"] == "closed down"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_subscription_rejects_non_positive_price(client, rep_headers, make_company):
    company = make_company()

    response = await client.post(
        "/api/admin/subscriptions",
        json={"company_id": company.company_id, "monthly_price": "0", "tools": ["SANDER-1"]},
        headers=rep_headers,
    )

    assert response.status_code == 400


# ============================================================================
# Test: Engagement
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_record_event_and_company_activity(client, rep_headers, make_company):
    company = make_company()
    occurred = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()

    recorded = await client.post(
        "/api/admin/engagement/events",
        json={"event_type": "quote_requested", "company_id": company.company_id, "occurred_at": occurred},
        headers=rep_headers,
    )
    assert recorded.status_code == 202
    assert recorded.json()["recorded"] is True

    events = await client.get(
        "/api/admin/engagement/events", params={"company_id": company.company_id}, headers=rep_headers
    )
    assert [e["event_type"] for e in events.json()["events"]] == ["quote_requested"]

    activity = await client.get(
        "/api/admin/engagement/company-activity",
        params={"company_ids": f"{company.company_id},OTHER"},
        headers=rep_headers,
    )
    entries = {c["company_id"]: c for c in activity.json()["companies"]}
    assert entries[company.company_id]["score_7d"] == 50
    assert entries[company.company_id]["heat_level"] == "fire"
    assert entries["OTHER"]["event_count"] == 0


# ============================================================================
# Test: Campaigns and offers
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_enqueue_campaign_queues_one_job_per_reachable_company(
    client, db_session, rep_headers, make_company, make_contact
):
    reachable = make_company()
    make_contact(reachable)
    unreachable = make_company()
    make_contact(unreachable, marketing_status=MarketingStatus.UNSUBSCRIBED)

    response = await client.post(
        "/api/admin/campaigns/enqueue",
        json={
            "company_ids": [reachable.company_id, unreachable.company_id],
            "campaign_key": "spring_2026",
            "offer_key": "spring_discs",
        },
        headers=rep_headers,
    )

    assert response.status_code == 202
    data = response.json()
    assert data["queued"] == 1
    assert data["skipped"] == 1
    assert db_session.query(OutboxJob).count() == 1


@pytest.mark.integration
@pytest.mark.asyncio
async def test_send_offer(client, rep_headers, make_company, make_contact):
    company = make_company()
    ok = make_contact(company)
    no_consent = make_contact(company, consented=False)

    response = await client.post(
        "/api/admin/offers/send",
        json={
            "company_id": company.company_id,
            "contact_ids": [ok.contact_id, no_consent.contact_id],
            "offer_key": "tool_trial",
        },
        headers=rep_headers,
    )

    assert response.status_code == 202
    data = response.json()
    assert data["eligible_count"] == 1
    assert data["ineligible_reasons"] == {no_consent.contact_id: "no GDPR consent"}

    nobody = await client.post(
        "/api/admin/offers/send",
        json={"company_id": company.company_id, "contact_ids": [no_consent.contact_id], "offer_key": "tool_trial"},
        headers=rep_headers,
    )
    assert nobody.status_code == 400


# ============================================================================
# Test: Commission and suggestions
# ============================================================================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_commission_visibility(client, rep_headers, director_headers):
    own = await client.get("/api/admin/commission/current", headers=rep_headers)
    assert own.status_code == 200
    assert own.json()["sales_rep_id"] == "REP1"
    assert own.json()["total_commission"] == 0.0

    other = await client.get("/api/admin/commission/current", params={"sales_rep_id": "REP2"}, headers=rep_headers)
    assert other.status_code == 403

    director_view = await client.get(
        "/api/admin/commission/current", params={"sales_rep_id": "REP2"}, headers=director_headers
    )
    assert director_view.json()["sales_rep_id"] == "REP2"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_suggestions_are_scoped_to_the_rep(client, rep_headers, director_headers, make_company, make_contact):
    today = datetime.now(timezone.utc).date()
    mine = make_company(account_owner="REP1", last_invoice_at=today - timedelta(days=120))
    make_contact(mine)
    theirs = make_company(account_owner="REP2", last_invoice_at=today - timedelta(days=120))
    make_contact(theirs)

    rep_view = await client.get("/api/admin/suggestions", headers=rep_headers)
    assert [s["company_id"] for s in rep_view.json()["suggestions"]] == [mine.company_id]
    assert rep_view.json()["suggestions"][0]["action"] == "send_reorder_reminder"

    director_view = await client.get("/api/admin/suggestions", headers=director_headers)
    assert {s["company_id"] for s in director_view.json()["suggestions"]} == {mine.company_id, theirs.company_id}
