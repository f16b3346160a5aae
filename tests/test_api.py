"""End-to-end HTTP flow: plan, escrow, work, release, transfer and disputes."""
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

import app.security as security_mod
from app.models import UserRole
from app.models.audit import AuditLog
from app.services import payments as payments_service
from app.utils.time import utctoday


def _plan(*amounts: str) -> dict:
    due = (utctoday() + timedelta(days=30)).isoformat()
    return {
        "milestones": [
            {"sequence": i, "title": f"Phase {i}", "amount": amount, "due_date": due}
            for i, amount in enumerate(amounts, start=1)
        ]
    }


@pytest.fixture
def company_headers(parties, headers_for):
    return headers_for(parties.company)


@pytest.fixture
def provider_headers(parties, headers_for):
    return headers_for(parties.provider)


@pytest.fixture
def admin_headers(parties, headers_for):
    return headers_for(parties.admin)


async def _lock_plan(client, project_id, company_headers, provider_headers, *amounts):
    response = await client.put(f"/projects/{project_id}/milestones", json=_plan(*amounts), headers=company_headers)
    assert response.status_code == 200, response.text
    assert (await client.post(f"/projects/{project_id}/milestones/approve", headers=company_headers)).status_code == 200
    response = await client.post(f"/projects/{project_id}/milestones/approve", headers=provider_headers)
    assert response.status_code == 200
    assert response.json()["milestones_locked"] is True
    plan = (await client.get(f"/projects/{project_id}/milestones", headers=company_headers)).json()
    return plan["milestones"]


@pytest.mark.anyio
async def test_full_milestone_payment_flow(
    client, db_session, parties, gateway, company_headers, provider_headers, admin_headers
):
    project_id = parties.project.id
    (milestone,) = await _lock_plan(client, project_id, company_headers, provider_headers, "500.00")
    assert milestone["status"] == "LOCKED"

    response = await client.post("/payments/initiate", json={"milestone_id": milestone["id"]}, headers=company_headers)
    assert response.status_code == 201, response.text
    handle = response.json()
    assert handle["client_secret"] == "pi_test_1_secret"
    assert handle["platform_fee"] == "50.00"
    assert handle["provider_amount"] == "450.00"
    payment_id = handle["payment_id"]

    # le webhook Stripe confirme normalement le séquestre
    payments_service.confirm_escrow(db_session, intent_id="pi_test_1", charge_id=gateway.succeed("pi_test_1"))

    response = await client.post(
        f"/milestones/{milestone['id']}/submit",
        json={"note": "All screens delivered", "deliverables": {"figma": "https://figma.example.com/f/1"}},
        headers=provider_headers,
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "SUBMITTED"

    response = await client.post(f"/milestones/{milestone['id']}/approve", headers=company_headers)
    assert response.json()["status"] == "APPROVED"

    response = await client.post(f"/milestones/{milestone['id']}/release", headers=company_headers)
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "RELEASED"
    assert response.json()["bank_transfer_status"] == "PENDING"

    pending = (await client.get("/payments/pending-payouts", headers=admin_headers)).json()
    assert [p["id"] for p in pending] == [payment_id]

    response = await client.post(
        f"/payments/{payment_id}/confirm-transfer", json={"reference": "MBB-0001"}, headers=admin_headers
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "TRANSFERRED"
    assert "bank_transfer_ref" not in response.json()

    earnings = (await client.get("/payments/earnings", headers=provider_headers)).json()
    assert earnings["transferred"] == "450.00"

    inbox = (await client.get("/notifications", headers=provider_headers)).json()
    titles = {n["title"] for n in inbox}
    assert {"Payment Received", "Payment Released!", "Bank Transfer Completed"} <= titles

    trail = (await client.get(f"/audit/Payment/{payment_id}", headers=admin_headers)).json()
    assert [entry["action"] for entry in trail][-2:] == ["PAYMENT_RELEASED", "BANK_TRANSFER_CONFIRMED"]


@pytest.mark.anyio
async def test_invalid_transition_returns_409_with_states(client, parties, company_headers, provider_headers):
    (milestone,) = await _lock_plan(client, parties.project.id, company_headers, provider_headers, "100.00")

    response = await client.post(f"/milestones/{milestone['id']}/approve", headers=company_headers)

    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "INVALID_STATE"
    assert error["details"]["current"] == "LOCKED"
    assert error["details"]["required"] == ["SUBMITTED"]


@pytest.mark.anyio
async def test_plan_validation_errors_are_422(client, parties, company_headers):
    response = await client.put(
        f"/projects/{parties.project.id}/milestones", json=_plan("600.00", "600.00"), headers=company_headers
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_FAILED"


@pytest.mark.anyio
async def test_provider_cannot_initiate_payment(client, parties, provider_headers):
    response = await client.post("/payments/initiate", json={"milestone_id": 1}, headers=provider_headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_SCOPE"


@pytest.mark.anyio
async def test_gateway_failure_maps_to_502(client, parties, gateway, company_headers, provider_headers):
    (milestone,) = await _lock_plan(client, parties.project.id, company_headers, provider_headers, "100.00")
    gateway.fail_on.add("create_intent")

    response = await client.post("/payments/initiate", json={"milestone_id": milestone["id"]}, headers=company_headers)

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["details"]["retryable"] is True


@pytest.mark.anyio
async def test_dispute_payout_over_http(
    client, db_session, parties, escrow_milestone, lock_plan, company_headers, admin_headers
):
    (milestone,) = lock_plan("100.00")
    escrow_milestone(milestone)

    response = await client.post(
        "/disputes",
        json={"project_id": parties.project.id, "milestone_id": milestone.id, "reason": "Missed deadline"},
        headers=company_headers,
    )
    assert response.status_code == 201, response.text
    dispute_id = response.json()["id"]

    stats = (await client.get("/admin/disputes/stats", headers=admin_headers)).json()
    assert stats["by_status"]["OPEN"] == 1

    response = await client.post(
        f"/admin/disputes/{dispute_id}/payout",
        json={"refund_amount": "40", "release_amount": "60", "resolution_note": "Split agreed"},
        headers=admin_headers,
    )
    assert response.status_code == 200, response.text
    summary = response.json()
    assert summary["refund_status"] == "completed"
    assert summary["release_status"] == "completed"

    dispute = (await client.get(f"/disputes/{dispute_id}", headers=company_headers)).json()
    assert dispute["status"] == "RESOLVED"
    assert dispute["notes"][-1]["admin_name"] == parties.admin.username


@pytest.mark.anyio
async def test_admin_only_routes_reject_company_keys(client, parties, company_headers):
    response = await client.get("/admin/disputes", headers=company_headers)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "INSUFFICIENT_SCOPE"


@pytest.mark.anyio
async def test_missing_api_key_is_401(client):
    response = await client.get("/payments/pending-payouts")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "NO_API_KEY"


@pytest.mark.anyio
async def test_admin_creates_user_bound_key(client, parties, admin_headers):
    response = await client.post(
        "/users",
        json={"username": f"studio-{uuid4().hex[:6]}", "email": "studio@example.com", "role": "company"},
        headers=admin_headers,
    )
    assert response.status_code == 201, response.text
    user_id = response.json()["id"]

    mismatch = await client.post(
        "/apikeys", json={"name": f"k-{uuid4().hex}", "scope": "provider", "user_id": user_id}, headers=admin_headers
    )
    assert mismatch.status_code == 422
    assert mismatch.json()["error"]["code"] == "SCOPE_ROLE_MISMATCH"

    created = await client.post(
        "/apikeys", json={"name": f"k-{uuid4().hex}", "scope": "company", "user_id": user_id}, headers=admin_headers
    )
    assert created.status_code == 201
    raw = created.json()["key"]
    assert raw.startswith("esc_")

    response = await client.get(f"/apikeys/{created.json()['id']}", headers={"Authorization": f"Bearer {raw}"})
    assert response.status_code == 403


@pytest.mark.anyio
async def test_provider_registers_payout_destination(client, make_user, headers_for):
    provider = make_user(UserRole.PROVIDER)
    response = await client.put(
        f"/users/{provider.id}/payout-destination",
        json={"bank_name": "CIMB", "bank_account_number": "8001 2345 6789", "bank_account_name": "Studio"},
        headers=headers_for(provider),
    )
    assert response.status_code == 200, response.text
    assert response.json()["has_payout_destination"] is True
    assert "bank_account_number" not in response.json()


@pytest.mark.anyio
async def test_legacy_key_is_admin_without_user(monkeypatch, client, db_session):
    monkeypatch.setattr(security_mod, "DEV_API_KEY_ALLOWED", True)
    legacy = {"Authorization": "Bearer dev-secret-key"}

    response = await client.get("/admin/disputes", headers=legacy)
    assert response.status_code == 200

    response = await client.get("/notifications", headers=legacy)
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "USER_REQUIRED"

    audit_entry = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "LEGACY_API_KEY_USED").order_by(AuditLog.at.desc())
    ).first()
    assert audit_entry is not None
    assert audit_entry.data_json.get("env") == "test"


@pytest.mark.anyio
async def test_legacy_key_rejected_outside_dev(monkeypatch, client):
    monkeypatch.setattr(security_mod, "DEV_API_KEY_ALLOWED", False)
    response = await client.get("/admin/disputes", headers={"Authorization": "Bearer dev-secret-key"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "LEGACY_KEY_FORBIDDEN"
