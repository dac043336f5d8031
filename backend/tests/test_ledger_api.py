"""
Fuel Ledger API Tests
Routes map ledger errors onto HTTP status codes with the structured error body.
"""

import pytest
from datetime import datetime
from decimal import Decimal
from fastapi.testclient import TestClient

import ledger_models
from database import get_db
from ledger_api import get_session_factory
from main import app


pytestmark = pytest.mark.api


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def _refill(client, tank_id, mrn="MRN-A", liters="1000", kg="800", **extra):
    body = {"mrn": mrn, "liters": liters, "kg": kg, "transaction_type": "REFILL"}
    body.update(extra)
    return client.post(f"/tanks/{tank_id}/movements", json=body)


class TestMovementRoutes:

    def test_refill_returns_created_leg(self, client, fixed_tank):
        response = _refill(client, fixed_tank.id, operator_id="op-1")

        assert response.status_code == 201
        data = response.json()
        assert data["transaction_type"] == "REFILL"
        assert data["mrn"] == "MRN-A"
        assert Decimal(data["liters_transacted"]) == Decimal("1000")
        assert data["correction_target"] is None

    def test_fueling_with_known_operation(self, client, db_session, fixed_tank):
        db_session.add(ledger_models.FuelingOperation(
            id="FO-2001",
            aircraft_registration="9A-BTK",
            date_time=datetime(2025, 4, 2, 7, 45),
            quantity_liters=Decimal("500"),
            quantity_kg=Decimal("400"),
        ))
        db_session.commit()
        _refill(client, fixed_tank.id)

        response = client.post(f"/tanks/{fixed_tank.id}/movements", json={
            "mrn": "MRN-A", "liters": "500", "kg": "400",
            "transaction_type": "FUELING", "related_transaction_id": "FO-2001",
        })

        assert response.status_code == 201
        assert response.json()["related_transaction_id"] == "FO-2001"

    def test_unknown_operation_is_a_conflict(self, client, fixed_tank):
        response = _refill(client, fixed_tank.id, related_transaction_id="FO-MISSING")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "dangling_operation_reference"

    def test_blank_mrn_is_unprocessable(self, client, fixed_tank):
        response = _refill(client, fixed_tank.id, mrn="  ")

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "invalid_request"

    def test_missing_field_is_unprocessable(self, client, fixed_tank):
        response = client.post(f"/tanks/{fixed_tank.id}/movements", json={"mrn": "MRN-A", "liters": "10"})
        assert response.status_code == 422

    def test_unknown_tank_is_not_found(self, client):
        response = _refill(client, 9999)

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "tank_not_found"

    def test_overdraw_is_a_conflict(self, client, fixed_tank):
        _refill(client, fixed_tank.id, liters="100", kg="80")

        response = client.post(f"/tanks/{fixed_tank.id}/movements", json={
            "mrn": "MRN-A", "liters": "200", "kg": "160", "transaction_type": "FUELING",
        })

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "insufficient_balance"
        assert detail["retryable"] is False

    def test_capacity_exceeded_reports_excess(self, client, fixed_tank):
        _refill(client, fixed_tank.id, liters="24000", kg="19200")

        response = _refill(client, fixed_tank.id, mrn="MRN-B", liters="1000", kg="800")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "capacity_exceeded"
        assert Decimal(detail["details"]["excess_liters"]) == Decimal("500")

    def test_fifo_withdrawal(self, client, fixed_tank):
        _refill(client, fixed_tank.id, mrn="MRN-A", liters="100", kg="80")
        _refill(client, fixed_tank.id, mrn="MRN-B", liters="100", kg="80")

        response = client.post(f"/tanks/{fixed_tank.id}/withdrawals", json={"kg": "120"})

        assert response.status_code == 201
        assert [leg["mrn"] for leg in response.json()] == ["MRN-A", "MRN-B"]

    def test_transfer(self, client, fixed_tank, mobile_tank):
        _refill(client, fixed_tank.id)

        response = client.post("/transfers", json={
            "source_tank_id": fixed_tank.id,
            "destination_tank_id": mobile_tank.id,
            "mrn": "MRN-A",
            "liters": "400",
            "kg": "320",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["in_leg"]["counterpart_leg_id"] == data["out_leg"]["id"]
        assert data["in_leg"]["tank_id"] == mobile_tank.id

    def test_drain_return(self, client, fixed_tank):
        _refill(client, fixed_tank.id)
        drain = client.post(f"/tanks/{fixed_tank.id}/movements", json={
            "mrn": "MRN-A", "liters": "200", "kg": "160", "transaction_type": "DRAIN",
        }).json()

        response = client.post(f"/tanks/{fixed_tank.id}/drain-returns", json={
            "drain_leg_ids": [drain["id"]], "liters": "150",
        })
        too_much = client.post(f"/tanks/{fixed_tank.id}/drain-returns", json={
            "drain_leg_ids": [drain["id"]], "liters": "100",
        })
        unknown = client.post(f"/tanks/{fixed_tank.id}/drain-returns", json={
            "drain_leg_ids": [424242], "liters": "1",
        })

        assert response.status_code == 201
        [leg] = response.json()
        assert leg["counterpart_leg_id"] == drain["id"]
        assert Decimal(leg["kg_transacted"]) == Decimal("120")
        assert too_much.status_code == 409
        assert too_much.json()["detail"]["error"] == "return_exceeds_drain"
        assert unknown.status_code == 404


class TestQueryRoutes:

    def test_ledger_balances_in_allocation_order(self, client, fixed_tank):
        _refill(client, fixed_tank.id, mrn="MRN-FIRST")
        _refill(client, fixed_tank.id, mrn="MRN-SECOND")

        response = client.get(f"/tanks/{fixed_tank.id}/ledger-balances")

        assert response.status_code == 200
        assert [b["mrn"] for b in response.json()] == ["MRN-FIRST", "MRN-SECOND"]

    def test_depleted_balances_are_hidden_by_default(self, client, fixed_tank):
        _refill(client, fixed_tank.id, liters="100", kg="80")
        client.post(f"/tanks/{fixed_tank.id}/movements", json={
            "mrn": "MRN-A", "liters": "100", "kg": "80", "transaction_type": "DRAIN",
        })

        assert client.get(f"/tanks/{fixed_tank.id}/ledger-balances").json() == []
        assert len(client.get(f"/tanks/{fixed_tank.id}/ledger-balances?active_only=false").json()) == 1

    def test_legs_by_tank_and_mrn(self, client, fixed_tank):
        _refill(client, fixed_tank.id)
        _refill(client, fixed_tank.id, mrn="MRN-B")

        assert len(client.get(f"/tanks/{fixed_tank.id}/legs").json()) == 2
        assert [leg["mrn"] for leg in client.get("/mrn/MRN-B/legs").json()] == ["MRN-B"]

    def test_balances_of_unknown_tank(self, client):
        assert client.get("/tanks/777/ledger-balances").status_code == 404


class TestConsistencyRoutes:

    def test_consistency_is_cached_until_forced(self, client, fixed_tank):
        _refill(client, fixed_tank.id)

        first = client.get(f"/tanks/{fixed_tank.id}/consistency").json()
        cached = client.get(f"/tanks/{fixed_tank.id}/consistency").json()
        forced = client.get(f"/tanks/{fixed_tank.id}/consistency?force=true").json()

        assert first["classification"] == "CONSISTENT"
        assert cached["from_cache"] is True
        assert forced["from_cache"] is False
        assert forced["record_id"] != first["record_id"]

    def test_discrepancies(self, client, fixed_tank):
        _refill(client, fixed_tank.id)

        response = client.get(f"/tanks/{fixed_tank.id}/discrepancies")

        assert response.status_code == 200
        data = response.json()
        assert data["classification"] == "CONSISTENT"
        assert data["entries"][0]["mrn"] == "MRN-A"

    def test_correction_flow(self, client, db_session, fixed_tank, seed_tank):
        seed_tank(db_session, fixed_tank, [("MRN-A", "10000", "8000")], level=("10100", "8080"))

        reconciled = client.post(f"/tanks/{fixed_tank.id}/reconcile")
        assert reconciled.json()["classification"] == "MINOR"

        response = client.post(f"/tanks/{fixed_tank.id}/corrections", json={
            "operator_id": "op-9", "reason": "Dipstick reading",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["record"]["resolved_by"] == "op-9"
        assert data["leg"]["transaction_type"] == "RECONCILIATION_CORRECTION"
        assert data["record"]["correction_leg_id"] == data["leg"]["id"]

    def test_correcting_consistent_tank_is_a_conflict(self, client, fixed_tank):
        _refill(client, fixed_tank.id)

        response = client.post(f"/tanks/{fixed_tank.id}/corrections", json={
            "operator_id": "op-9", "reason": "Routine",
        })

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "no_drift_to_correct"

    def test_correction_without_reason_is_unprocessable(self, client, fixed_tank):
        response = client.post(f"/tanks/{fixed_tank.id}/corrections", json={"operator_id": "op-9", "reason": ""})
        assert response.status_code == 422

    def test_batch_reconcile(self, client, session_factory, seed_tank):
        db = session_factory()
        try:
            tank = ledger_models.FixedTank(name="Batch", capacity_liters=Decimal("24500"))
            db.add(tank)
            db.commit()
            seed_tank(db, tank, [("MRN-A", "1000", "800")])
            tank_id = tank.id
        finally:
            db.close()
        app.dependency_overrides[get_session_factory] = lambda: session_factory

        response = client.post("/reconcile", json={"tank_ids": [tank_id], "triggered_by": "nightly"})

        assert response.status_code == 200
        [outcome] = response.json()
        assert outcome["tank_id"] == tank_id
        assert outcome["status"] == "classified"
        assert outcome["classification"] == "CONSISTENT"
        assert outcome["error"] is None
        assert Decimal(outcome["drift_liters"]) == Decimal("0")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
