# ================================
# OVERSTAY API TESTS (test_api.py)
# ================================

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import TODAY, FakeGateway, detect_record
from overstay_engine.main import app
from overstay_engine.dependencies import get_db, get_payment_service
from overstay_engine.services.overstay_detection_service import OverstayDetectionService

BASE = "/api/v1/overstays"


def event_loop_running():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


@pytest.fixture
def client(db, gateway):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_payment_service] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestOverstayReads:
    """GET endpoints"""

    def test_pending_list(self, client, pending_record):
        response = client.get(f"{BASE}/pending")

        assert response.status_code == 200
        data = response.json()
        assert len(data) == 1
        assert data[0]["overstay_id"] == pending_record.id
        assert data[0]["calculated_penalty_cents"] == 4400

    def test_get_record(self, client, pending_record):
        response = client.get(f"{BASE}/{pending_record.id}")

        assert response.status_code == 200
        assert response.json()["status"] == "pending_review"

    def test_unknown_record_returns_404(self, client):
        response = client.get(f"{BASE}/999")

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"
        assert response.headers["X-Request-ID"]

    def test_history(self, client, pending_record):
        response = client.get(f"{BASE}/{pending_record.id}/history")

        assert response.status_code == 200
        assert [h["new_status"] for h in response.json()] == ["pending_review"]

    def test_stats(self, client, pending_record):
        response = client.get(f"{BASE}/stats")

        assert response.status_code == 200
        assert response.json()["by_status"] == {"pending_review": 1}

    def test_list_and_chef_views(self, client, db, pending_record):
        chef_id = pending_record.booking.chef_id

        assert len(client.get(f"{BASE}/").json()) == 1
        chef_view = client.get(f"{BASE}/chefs/{chef_id}").json()
        assert [r["id"] for r in chef_view] == [pending_record.id]

    def test_chef_unpaid_penalties(self, client, pending_record):
        chef_id = pending_record.booking.chef_id

        body = client.get(f"{BASE}/chefs/{chef_id}/unpaid").json()

        assert body["has_unpaid_penalties"] is True
        assert [p["overstay_id"] for p in body["penalties"]] == [pending_record.id]
        assert body["penalties"][0]["penalty_amount_cents"] == 4400


class TestOverstayActions:
    """POST endpoints"""

    def test_approve_then_charge(self, client, pending_record, gateway):
        response = client.post(
            f"{BASE}/{pending_record.id}/decision",
            json={"manager_id": 1, "action": "approve"}
        )
        assert response.status_code == 200
        assert response.json()["record"]["status"] == "penalty_approved"

        response = client.post(f"{BASE}/{pending_record.id}/charge")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["record"]["status"] == "charge_succeeded"
        assert len(gateway.calls) == 1

    def test_adjust_above_calculated_returns_422(self, client, pending_record):
        response = client.post(
            f"{BASE}/{pending_record.id}/decision",
            json={"manager_id": 1, "action": "adjust", "final_penalty_cents": 99999}
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_unknown_action_is_rejected_by_schema(self, client, pending_record):
        response = client.post(
            f"{BASE}/{pending_record.id}/decision",
            json={"manager_id": 1, "action": "escalate"}
        )

        assert response.status_code == 422

    def test_decision_on_waived_record_returns_409(self, client, pending_record):
        client.post(
            f"{BASE}/{pending_record.id}/decision",
            json={"manager_id": 1, "action": "waive", "waive_reason": "Goodwill"}
        )

        response = client.post(
            f"{BASE}/{pending_record.id}/decision",
            json={"manager_id": 1, "action": "approve"}
        )

        assert response.status_code == 409
        assert response.json()["error_code"] == "INVALID_STATE"

    def test_charge_without_payment_method_returns_422(self, client, db, factory):
        record = detect_record(db, factory.booking(stripe_payment_method_id=None))
        client.post(f"{BASE}/{record.id}/decision", json={"manager_id": 1, "action": "approve"})

        response = client.post(f"{BASE}/{record.id}/charge")

        assert response.status_code == 422
        assert response.json()["error_code"] == "MISSING_PAYMENT_METHOD"

    def test_declined_charge_then_retry(self, client, pending_record, gateway):
        client.post(f"{BASE}/{pending_record.id}/decision", json={"manager_id": 1, "action": "approve"})
        gateway.result = gateway.result.model_copy(update={
            "success": False,
            "failure_reason": "Insufficient funds"
        })

        declined = client.post(f"{BASE}/{pending_record.id}/charge").json()
        assert declined["success"] is False
        assert declined["record"]["status"] == "charge_failed"

        gateway.result = FakeGateway().result
        retried = client.post(f"{BASE}/{pending_record.id}/retry-charge", json={"manager_id": 1})

        assert retried.status_code == 200
        assert retried.json()["record"]["status"] == "charge_succeeded"

    def test_resolve(self, client, pending_record):
        response = client.post(
            f"{BASE}/{pending_record.id}/resolve",
            json={"resolution_type": "removed", "resolution_notes": "Items collected", "resolved_by": 1}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "resolved"

    def test_manual_detection_run(self, client, factory):
        factory.booking(days_overdue=5)
        factory.booking(days_overdue=2)

        response = client.post(f"{BASE}/detect", params={"run_date": TODAY.isoformat()})

        assert response.status_code == 200
        body = response.json()
        assert body["started"] is True
        assert body["processed"] == 2
        assert sorted(r["status"] for r in body["results"]) == ["grace_period", "pending_review"]

    def test_blocking_work_runs_off_the_event_loop(self, client, pending_record, gateway, monkeypatch):
        on_loop = {}
        create_charge = gateway.create_charge

        def tracked_create_charge(**kwargs):
            on_loop["charge"] = event_loop_running()
            return create_charge(**kwargs)

        def tracked_sweep(db, today=None):
            on_loop["sweep"] = event_loop_running()
            return []

        gateway.create_charge = tracked_create_charge
        monkeypatch.setattr(OverstayDetectionService, "detect_overstays", staticmethod(tracked_sweep))

        client.post(f"{BASE}/{pending_record.id}/decision", json={"manager_id": 1, "action": "approve"})
        assert client.post(f"{BASE}/{pending_record.id}/charge").json()["success"] is True
        assert client.post(f"{BASE}/detect").json()["started"] is True

        assert on_loop == {"charge": False, "sweep": False}

