"""HTTP tests for the overstay endpoints"""

import httpx
import pytest
import pytest_asyncio

from conftest import TODAY
from kitchenhub.auth import create_jwt_token
from kitchenhub.database import get_db
from kitchenhub.domain.overstays import router as overstay_router
from kitchenhub.domain.overstays import scanner as scanner_module
from kitchenhub.domain.overstays.errors import GatewayTerminalError
from kitchenhub.main import app


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_jwt_token({'sub': str(user.id)})}"}


@pytest_asyncio.fixture
async def client(db, session_factory, gateway, notifier):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[overstay_router.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[overstay_router.get_notification_service] = lambda: notifier
    app.dependency_overrides[overstay_router.get_session_factory] = lambda: session_factory
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/manager/overstays")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get("/manager/overstays", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_chef_cannot_use_manager_routes(self, client, marketplace):
        response = await client.get("/manager/overstays", headers=auth(marketplace["chef"]))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_manager_cannot_use_admin_routes(self, client, marketplace):
        response = await client.get("/admin/overstays/escalated", headers=auth(marketplace["manager"]))
        assert response.status_code == 403


class TestManagerEndpoints:
    @pytest.mark.asyncio
    async def test_list_with_stats(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.get("/manager/overstays", headers=auth(marketplace["manager"]))

        assert response.status_code == 200
        body = response.json()
        assert [o["id"] for o in body["overstays"]] == [record.id]
        overstay = body["overstays"][0]
        assert overstay["status"] == "pending_review"
        assert overstay["calculatedPenaltyCents"] == 12000
        assert overstay["breakdown"]["penaltyDays"] == 2
        assert overstay["storageName"] == "Walk-in Cooler Shelf"
        assert body["stats"]["byStatus"]["pending_review"] == 1

    @pytest.mark.asyncio
    async def test_detail_forbidden_for_other_manager(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.get(f"/manager/overstays/{record.id}", headers=auth(marketplace["other_manager"]))

        assert response.status_code == 403
        assert response.json()["type"] == "forbidden"

    @pytest.mark.asyncio
    async def test_unknown_overstay(self, client, marketplace):
        response = await client.get("/manager/overstays/404", headers=auth(marketplace["manager"]))

        assert response.status_code == 404
        assert response.json() == {"detail": "Overstay not found", "type": "not_found"}

    @pytest.mark.asyncio
    async def test_approve_and_charge(self, client, detect, gateway, marketplace):
        record = await detect(days_overdue=4)

        response = await client.post(
            f"/manager/overstays/{record.id}/approve",
            json={"amountCents": 10000, "notes": "  Reduced for first offence  "},
            headers=auth(marketplace["manager"]),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["charge"]["success"] is True
        assert body["charge"]["amountCents"] == 10000
        assert body["overstay"]["status"] == "charge_succeeded"
        assert body["overstay"]["finalPenaltyCents"] == 10000
        assert body["overstay"]["managerNotes"] == "Reduced for first offence"
        assert len(gateway.calls) == 1

    @pytest.mark.asyncio
    async def test_approve_above_maximum(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.post(
            f"/manager/overstays/{record.id}/approve",
            json={"amountCents": 50000},
            headers=auth(marketplace["manager"]),
        )

        assert response.status_code == 400
        assert response.json() == {
            "detail": "Penalty amount cannot exceed the calculated maximum of $120.00",
            "type": "validation_error",
        }

    @pytest.mark.asyncio
    async def test_waive_requires_reason(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.post(
            f"/manager/overstays/{record.id}/waive",
            json={"reason": "   "},
            headers=auth(marketplace["manager"]),
        )
        detail = await client.get(f"/manager/overstays/{record.id}", headers=auth(marketplace["manager"]))

        assert response.status_code == 400
        assert response.json()["detail"] == "A reason is required to waive a penalty"
        assert detail.json()["status"] == "pending_review"

    @pytest.mark.asyncio
    async def test_waive(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.post(
            f"/manager/overstays/{record.id}/waive",
            json={"reason": "Cooler failure"},
            headers=auth(marketplace["manager"]),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "penalty_waived"
        assert response.json()["finalPenaltyCents"] == 0

    @pytest.mark.asyncio
    async def test_charge_before_approval_conflicts(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.post(f"/manager/overstays/{record.id}/charge", headers=auth(marketplace["manager"]))

        assert response.status_code == 409
        assert response.json() == {
            "detail": "Cannot charge an overstay in status 'pending_review'",
            "type": "invalid_transition",
        }

    @pytest.mark.asyncio
    async def test_failed_charge_retry_and_attempts(self, client, detect, gateway, marketplace):
        record = await detect(days_overdue=4)
        headers = auth(marketplace["manager"])
        gateway.fail_with(GatewayTerminalError("Your card was declined"))

        approve = await client.post(f"/manager/overstays/{record.id}/approve", json={}, headers=headers)
        retry = await client.post(f"/manager/overstays/{record.id}/charge", headers=headers)
        attempts = await client.get(f"/manager/overstays/{record.id}/charge-attempts", headers=headers)

        assert approve.json()["charge"]["success"] is False
        assert approve.json()["overstay"]["status"] == "charge_failed"
        assert retry.json()["success"] is True
        assert [a["outcome"] for a in attempts.json()] == ["terminal_failure", "succeeded"]

    @pytest.mark.asyncio
    async def test_resolve_and_history(self, client, detect, marketplace):
        record = await detect(days_overdue=1)
        headers = auth(marketplace["manager"])

        response = await client.post(
            f"/manager/overstays/{record.id}/resolve",
            json={"resolutionType": "removed", "notes": "Items collected"},
            headers=headers,
        )
        history = await client.get(f"/manager/overstays/{record.id}/history", headers=headers)

        assert response.status_code == 200
        assert response.json()["resolutionType"] == "removed"
        assert history.status_code == 200
        assert history.json()[-1]["newStatus"] == "resolved"

    @pytest.mark.asyncio
    async def test_reopen_not_escalated(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.post(
            f"/manager/overstays/{record.id}/reopen", json={}, headers=auth(marketplace["manager"])
        )

        assert response.status_code == 409


class TestChefEndpoints:
    @pytest.mark.asyncio
    async def test_chef_sees_own_penalties(self, client, detect, marketplace):
        record = await detect(days_overdue=4)

        response = await client.get("/chef/overstays", headers=auth(marketplace["chef"]))

        assert response.status_code == 200
        assert response.json()["hasUnpaidPenalties"] is True
        assert [p["id"] for p in response.json()["penalties"]] == [record.id]


class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_trigger_scan(self, client, make_booking, marketplace, monkeypatch):
        monkeypatch.setattr(scanner_module, "_acquire_redis_lock", lambda: None)
        monkeypatch.setattr(scanner_module, "utc_today", lambda: TODAY)
        make_booking(days_overdue=4)

        response = await client.post("/admin/overstays/scan", headers=auth(marketplace["admin"]))

        assert response.status_code == 200
        assert response.json()["detected"] == 1
        assert response.json()["skipped"] is False

    @pytest.mark.asyncio
    async def test_escalated_list(self, client, detect, gateway, marketplace):
        record = await detect(days_overdue=4)
        headers = auth(marketplace["manager"])
        gateway.fail_with(*[GatewayTerminalError("Declined") for _ in range(3)])
        await client.post(f"/manager/overstays/{record.id}/approve", json={}, headers=headers)
        await client.post(f"/manager/overstays/{record.id}/charge", headers=headers)
        await client.post(f"/manager/overstays/{record.id}/charge", headers=headers)

        response = await client.get("/admin/overstays/escalated", headers=auth(marketplace["admin"]))

        assert response.status_code == 200
        assert [o["id"] for o in response.json()] == [record.id]
        assert response.json()[0]["paymentLinkUrl"] == f"https://pay.test/{record.id}"
