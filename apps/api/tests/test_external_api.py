"""Tests for the external system-of-record API."""

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.core.config import settings
from app.db.models import AuditEntry, CaseActivity


# =============================================================================
# Auth
# =============================================================================

@pytest.mark.asyncio
async def test_missing_key_forbidden(client: AsyncClient):
    response = await client.post("/external/organisations", json={"externalRef": "ORG-1", "name": "Acme"})
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_wrong_key_forbidden(client: AsyncClient):
    response = await client.post(
        "/external/organisations",
        json={"externalRef": "ORG-1", "name": "Acme"},
        headers={"X-External-Api-Key": "nope"},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unconfigured_secret_not_implemented(external_client: AsyncClient, monkeypatch):
    monkeypatch.setattr(settings, "EXTERNAL_API_SECRET", "")
    response = await external_client.post("/external/organisations", json={"externalRef": "ORG-1", "name": "Acme"})
    assert response.status_code == 501


# =============================================================================
# Upserts
# =============================================================================

@pytest.mark.asyncio
async def test_organisation_upsert_round_trip(external_client: AsyncClient):
    first = await external_client.post("/external/organisations", json={"externalRef": "ORG-1", "name": "Acme"})
    second = await external_client.post("/external/organisations", json={"externalRef": "ORG-1", "name": "Acme Ltd"})

    assert first.status_code == 200
    assert first.json()["created"] is True
    assert first.json()["externalRef"] == "ORG-1"
    assert second.json()["created"] is False
    assert second.json()["id"] == first.json()["id"]


@pytest.mark.asyncio
async def test_user_create_returns_temp_password_once(external_client: AsyncClient, test_org):
    payload = {
        "externalRef": "USR-1",
        "email": "ap@acme.com",
        "organisationExternalRef": test_org.external_ref,
    }
    created = await external_client.post("/external/users", json=payload)
    repeated = await external_client.post("/external/users", json=payload)

    body = created.json()
    assert body["tempPassword"]
    assert body["mustChangePassword"] is True
    assert repeated.json()["tempPassword"] is None


@pytest.mark.asyncio
async def test_case_upsert_reports_outstanding_as_string(external_client: AsyncClient, test_org):
    response = await external_client.post(
        "/external/cases",
        json={
            "externalRef": "CASE-1",
            "organisationExternalRef": test_org.external_ref,
            "accountNumber": "ACC-9",
            "caseName": "Debtor",
            "originalAmount": "1,000",
            "feesAdded": 25,
        },
    )
    assert response.status_code == 200
    assert response.json()["outstandingAmount"] == "1025.00"


@pytest.mark.asyncio
async def test_case_with_unknown_organisation_is_404(external_client: AsyncClient):
    response = await external_client.post(
        "/external/cases",
        json={
            "externalRef": "CASE-1",
            "organisationExternalRef": "ORG-MISSING",
            "accountNumber": "A",
            "caseName": "B",
            "originalAmount": "1",
        },
    )
    assert response.status_code == 404
    assert response.json()["code"] == "DEPENDENCY_NOT_FOUND"
    assert response.json()["field"] == "organisationExternalRef"


@pytest.mark.asyncio
async def test_schema_error_is_422(external_client: AsyncClient):
    response = await external_client.post("/external/organisations", json={"name": "No ref"})
    assert response.status_code == 422


# =============================================================================
# Payments
# =============================================================================

@pytest.mark.asyncio
async def test_payment_lifecycle(external_client: AsyncClient, test_case):
    created = await external_client.post(
        "/external/payments",
        json={
            "externalRef": "PAY-1",
            "caseExternalRef": test_case.external_ref,
            "amount": "100",
            "paymentDate": "21/01/2025",
        },
    )
    assert created.status_code == 200
    assert created.json()["amount"] == "100.00"
    assert created.json()["outstandingAmount"] == "900.00"

    updated = await external_client.put("/external/payments/PAY-1", json={"amount": "150.00"})
    assert updated.json()["outstandingAmount"] == "850.00"

    deleted = await external_client.delete("/external/payments/PAY-1")
    assert deleted.json() == {"deleted": True, "externalRef": "PAY-1", "outstandingAmount": "1000.00"}


@pytest.mark.asyncio
async def test_json_fraction_is_exact(external_client: AsyncClient, test_case):
    response = await external_client.post(
        "/external/payments",
        json={"externalRef": "PAY-1", "caseExternalRef": test_case.external_ref, "amount": 0.1},
    )
    assert response.status_code == 200
    assert response.json()["amount"] == "0.10"
    assert response.json()["outstandingAmount"] == "999.90"


@pytest.mark.asyncio
async def test_invalid_amount_is_400(external_client: AsyncClient, test_case):
    response = await external_client.post(
        "/external/payments",
        json={"externalRef": "PAY-1", "caseExternalRef": test_case.external_ref, "amount": "12.345"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_AMOUNT"
    assert response.json()["field"] == "amount"


@pytest.mark.asyncio
async def test_invalid_date_is_400(external_client: AsyncClient, test_case):
    response = await external_client.post(
        "/external/payments",
        json={
            "externalRef": "PAY-1",
            "caseExternalRef": test_case.external_ref,
            "amount": "1",
            "paymentDate": "31/04/2025",
        },
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_DATE"


@pytest.mark.asyncio
async def test_unknown_payment_is_404(external_client: AsyncClient):
    assert (await external_client.put("/external/payments/NOPE", json={"amount": "1"})).status_code == 404
    assert (await external_client.delete("/external/payments/NOPE")).status_code == 404
    assert (await external_client.post("/external/payments/NOPE/reverse")).status_code == 404


@pytest.mark.asyncio
async def test_reverse_is_idempotent(external_client: AsyncClient, test_case):
    await external_client.post(
        "/external/payments",
        json={"externalRef": "PAY-1", "caseExternalRef": test_case.external_ref, "amount": "200"},
    )

    first = await external_client.post("/external/payments/PAY-1/reverse", json={"reason": "Chargeback"})
    second = await external_client.post("/external/payments/PAY-1/reverse")

    assert first.json()["amount"] == "-200.00"
    assert first.json()["alreadyReversed"] is False
    assert second.json()["alreadyReversed"] is True
    assert second.json()["id"] == first.json()["id"]
    assert second.json()["outstandingAmount"] == "1000.00"

    nested = await external_client.post("/external/payments/REV-PAY-1/reverse")
    assert nested.status_code == 400


# =============================================================================
# Bulk / timeline
# =============================================================================

@pytest.mark.asyncio
async def test_bulk_sync_partial_failure_is_200(external_client: AsyncClient, test_case):
    payments = [
        {"externalRef": f"PAY-{index}", "caseExternalRef": test_case.external_ref, "amount": "1.00"}
        for index in range(10)
    ]
    payments.append({"externalRef": "PAY-X", "caseExternalRef": "CASE-MISSING", "amount": "1.00"})

    response = await external_client.post("/external/bulk-sync", json={"payments": payments})

    assert response.status_code == 200
    body = response.json()
    assert body["payments"]["created"] == 10
    assert body["payments"]["errors"] == [
        {
            "externalRef": "PAY-X",
            "error": "Case with reference 'CASE-MISSING' not found",
            "code": "DEPENDENCY_NOT_FOUND",
        }
    ]
    assert body["organisations"] == {"created": 0, "updated": 0, "errors": []}


@pytest.mark.asyncio
async def test_activity_push_never_touches_ledger(external_client: AsyncClient, db, test_case):
    response = await external_client.post(
        "/external/activities",
        json={
            "caseExternalRef": test_case.external_ref,
            "activityType": "phone_call",
            "description": "Debtor promised payment",
            "performedBy": "Collector Jo",
            "activityDate": "03/04/2025",
        },
    )

    assert response.status_code == 200
    activity = db.execute(select(CaseActivity).where(CaseActivity.activity_type == "phone_call")).scalar_one()
    assert activity.performed_by == "Collector Jo"
    assert (activity.created_at.month, activity.created_at.day) == (4, 3)
    db.refresh(test_case)
    assert str(test_case.outstanding_amount) == "1000.00"


@pytest.mark.asyncio
async def test_message_push(external_client: AsyncClient, test_case, member_user, outbox):
    response = await external_client.post(
        "/external/messages",
        json={"caseExternalRef": test_case.external_ref, "message": "Statement ready"},
    )
    assert response.json()["notificationsSent"] == 1
    assert outbox.recipients == [member_user.email]


@pytest.mark.asyncio
async def test_request_id_reaches_audit(external_client: AsyncClient, db):
    await external_client.post(
        "/external/organisations",
        json={"externalRef": "ORG-1", "name": "Acme"},
        headers={"X-Request-ID": "trace-abc"},
    )
    entry = db.execute(select(AuditEntry)).scalar_one()
    assert entry.request_id == "trace-abc"
    assert entry.actor == "external"
