"""
Backend API Tests for the Budget Consistency Engine
Testing: auth, transactions, budgets, alerts, audit log guards, reconciliation, integrity
"""
import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from audit_service import AuditService
from server import create_app

from conftest import USER, OTHER_USER


def auth_headers(user_id=USER):
    token = create_access_token({"user_id": user_id})
    return {"Authorization": f"Bearer {token}"}


BUDGET = {
    "name": "March",
    "period_start": "2024-03-01T00:00:00",
    "period_end": "2024-03-31T23:59:59",
    "categories": [
        {"id": "cat-dining", "name": "Dining", "allocated": 200, "transaction_categories": ["restaurants"]},
        {"id": "cat-groceries", "name": "Groceries", "allocated": 500, "transaction_categories": ["groceries"]},
    ],
}


def expense_body(amount, category_id="restaurants", date="2024-03-10T19:30:00"):
    return {"type": "expense", "amount": amount, "category_id": category_id, "date": date,
            "description": "Dinner"}


@pytest.fixture
def client(facade):
    app = create_app(facade, AuditService(facade.store, facade.auditor))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def budget_id(client):
    response = client.post("/api/budgets", json=BUDGET, headers=auth_headers())
    assert response.status_code == 201, f"Budget create failed: {response.text}"
    return response.json()["budget_id"]


def create_expense(client, amount, **kwargs):
    response = client.post("/api/transactions", json=expense_body(amount, **kwargs), headers=auth_headers())
    assert response.status_code == 201, f"Transaction create failed: {response.text}"
    return response.json()


class TestHealthAndAuth:
    """Health check and token handling"""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["store"] == "InMemoryDocumentStore"
        assert data["recompute_strategy"] == "full"

    def test_missing_token(self, client):
        response = client.get("/api/transactions")
        assert response.status_code in [401, 403]

    def test_invalid_token(self, client):
        response = client.get("/api/transactions", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401


class TestTransactionEndpoints:
    """Transaction CRUD"""

    def test_create_and_get(self, client):
        created = create_expense(client, 42.5)
        assert created["version"] == 1
        assert created["owner_id"] == USER
        assert created["date"] == "2024-03-10T19:30:00"

        response = client.get(f"/api/transactions/{created['transaction_id']}", headers=auth_headers())
        assert response.status_code == 200
        assert response.json()["amount"] == 42.5

    def test_validation_error(self, client):
        response = client.post("/api/transactions", json=expense_body(-5), headers=auth_headers())
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "NEGATIVE_AMOUNT"
        assert detail["field"] == "amount"

    def test_other_users_transaction_is_hidden(self, client):
        created = create_expense(client, 10)
        response = client.get(f"/api/transactions/{created['transaction_id']}", headers=auth_headers(OTHER_USER))
        assert response.status_code == 404
        assert client.get("/api/transactions", headers=auth_headers(OTHER_USER)).json() == []

    def test_update_conflict(self, client):
        txn_id = create_expense(client, 40)["transaction_id"]

        first = client.put(f"/api/transactions/{txn_id}", json={"expected_version": 1, "amount": 90},
                           headers=auth_headers())
        assert first.status_code == 200
        assert first.json()["version"] == 2

        stale = client.put(f"/api/transactions/{txn_id}", json={"expected_version": 1, "amount": 70},
                           headers=auth_headers())
        assert stale.status_code == 409
        detail = stale.json()["detail"]
        assert detail["error"] == "VERSION_CONFLICT"
        assert detail["current_version"] == 2
        assert detail["conflicting_fields"] == ["amount"]

        forced = client.put(f"/api/transactions/{txn_id}",
                            json={"expected_version": 1, "amount": 70, "last_writer_wins": True},
                            headers=auth_headers())
        assert forced.status_code == 200
        assert forced.json()["amount"] == 70.0

    def test_delete_restore_and_versions(self, client):
        txn_id = create_expense(client, 40)["transaction_id"]

        deleted = client.delete(f"/api/transactions/{txn_id}?expected_version=1", headers=auth_headers())
        assert deleted.status_code == 200
        assert client.get(f"/api/transactions/{txn_id}", headers=auth_headers()).status_code == 404

        restored = client.post(f"/api/transactions/{txn_id}/restore", json={"expected_version": 2},
                               headers=auth_headers())
        assert restored.status_code == 200
        assert restored.json()["is_deleted"] is False

        versions = client.get(f"/api/transactions/{txn_id}/versions", headers=auth_headers()).json()
        assert [v["version_number"] for v in versions] == [3, 2, 1]

    def test_lock_and_unlock(self, client):
        txn_id = create_expense(client, 40)["transaction_id"]

        locked = client.post(f"/api/transactions/{txn_id}/lock", json={"duration_seconds": 60},
                             headers=auth_headers())
        assert locked.status_code == 200
        assert locked.json()["locked_by"] == USER

        assert client.delete(f"/api/transactions/{txn_id}/lock", headers=auth_headers()).status_code == 200
        assert client.delete(f"/api/transactions/{txn_id}/lock", headers=auth_headers()).status_code == 409


class TestBudgetEndpoints:
    """Budgets, alerts and preview"""

    def test_over_budget_flow(self, client, budget_id):
        create_expense(client, 150)
        create_expense(client, 80)

        budget = client.get(f"/api/budgets/{budget_id}", headers=auth_headers()).json()
        dining = next(c for c in budget["categories"] if c["id"] == "cat-dining")
        assert dining["spent"] == 230.0
        assert dining["is_over_budget"] is True

        alerts = client.get("/api/alerts", headers=auth_headers()).json()
        assert len(alerts) == 1
        assert alerts[0]["message"] == "You've exceeded your Dining budget by 30.00"

        stale = client.patch(f"/api/budgets/{budget_id}/categories/cat-dining/allocation",
                             json={"allocated": 300, "expected_version": 1}, headers=auth_headers())
        assert stale.status_code == 409

        fresh = client.patch(f"/api/budgets/{budget_id}/categories/cat-dining/allocation",
                             json={"allocated": 300, "expected_version": budget["version"]},
                             headers=auth_headers())
        assert fresh.status_code == 200
        assert next(c for c in fresh.json()["categories"] if c["id"] == "cat-dining")["remaining"] == 70.0

    def test_preview(self, client, budget_id):
        create_expense(client, 150)
        response = client.post("/api/budgets/preview-impact",
                               json={"amount": 80, "category_id": "restaurants", "date": "2024-03-12T00:00:00"},
                               headers=auth_headers())
        assert response.status_code == 200
        data = response.json()
        assert data["impacts"][0]["amount_used"] == 230.0
        assert "This will put you over budget for Dining" in data["warnings"]

    def test_other_users_budget_is_hidden(self, client, budget_id):
        response = client.get(f"/api/budgets/{budget_id}", headers=auth_headers(OTHER_USER))
        assert response.status_code == 404


class TestAuditEndpoints:
    """Append-only audit log"""

    def test_audit_log_listing_and_export(self, client):
        txn_id = create_expense(client, 40)["transaction_id"]
        client.put(f"/api/transactions/{txn_id}", json={"expected_version": 1, "amount": 45},
                   headers=auth_headers())

        logs = client.get(f"/api/audit-logs?entity_id={txn_id}", headers=auth_headers()).json()
        assert sorted(log["action"] for log in logs) == ["CREATE", "UPDATE"]

        export = client.get("/api/audit-logs/export", headers=auth_headers())
        assert export.status_code == 200
        assert export.headers["content-type"].startswith("text/csv")
        assert export.text.startswith('"Timestamp","ActorId","Action","EntityId","Changes","Source"')

    def test_audit_entries_are_immutable(self, client):
        assert client.put("/api/audit-logs/any", headers=auth_headers()).status_code == 403
        assert client.delete("/api/audit-logs/any", headers=auth_headers()).status_code == 403

        detail = client.delete("/api/audit-logs/any", headers=auth_headers()).json()["detail"]
        assert detail == "ARCHITECTURAL GUARD: Audit entry any is append-only. DELETE is blocked."


class TestReconciliationEndpoints:
    """Reconciliation and integrity"""

    def test_missing_statement_line(self, client):
        create_expense(client, 85.4, category_id="groceries", date="2024-03-05T10:00:00")
        response = client.post("/api/reconciliation/missing", json={"statement": [
            {"date": "2024-03-06T00:00:00", "amount": -85.4, "description": "Market"},
            {"date": "2024-03-03T00:00:00", "amount": -1200, "description": "Rent"},
        ]}, headers=auth_headers())
        assert response.status_code == 200
        data = response.json()
        assert data["missing_count"] == 1
        assert data["issues"][0]["severity"] == "HIGH"

    def test_reconcile_and_verify(self, client):
        create_expense(client, 100)
        reconcile = client.post("/api/reconciliation/reconcile", json={"expected_balance": -100},
                                headers=auth_headers()).json()
        assert reconcile["is_reconciled"] is True

        verify = client.post("/api/integrity/verify", json={}, headers=auth_headers()).json()
        assert verify["is_valid"] is True
        assert verify["transaction_count"] == 1

        tampered = client.post("/api/integrity/verify", json={"expected_checksum": "0" * 32},
                               headers=auth_headers()).json()
        assert tampered["issues"] == ["Checksum mismatch - data may have been tampered with"]
        assert verify["date_anomalies"] == []

    def test_verify_reports_future_dates_without_failing(self, client):
        future = create_expense(client, 20, date="2024-06-01T00:00:00")
        verify = client.post("/api/integrity/verify", json={}, headers=auth_headers()).json()
        assert verify["is_valid"] is True
        assert verify["date_anomalies"] == [{"transaction_id": future["transaction_id"], "issue": "future_date"}]

    def test_report_and_budget_integrity(self, client, budget_id):
        create_expense(client, 100)
        report = client.post("/api/reconciliation/report", json={
            "period_start": "2024-03-01T00:00:00", "period_end": "2024-03-31T00:00:00"
        }, headers=auth_headers()).json()
        assert report["transaction_counts"]["expense"] == 1
        assert report["closing_balance"]["expenses"] == 100.0

        check = client.get("/api/integrity/budgets", headers=auth_headers()).json()
        assert check["mismatches_found"] == 0


class TestSnapshotEndpoints:
    """Balance snapshots are read-only"""

    def test_unknown_snapshot(self, client):
        assert client.get("/api/reconciliation/snapshots/nope", headers=auth_headers()).status_code == 404

    def test_snapshots_cannot_be_changed(self, client):
        update = client.put("/api/reconciliation/snapshots/s1", headers=auth_headers())
        assert update.status_code == 403
        assert update.json()["detail"] == "ARCHITECTURAL GUARD: Snapshot s1 is immutable. UPDATE is blocked."
        assert client.delete("/api/reconciliation/snapshots/s1", headers=auth_headers()).status_code == 403


class TestJobPolling:
    """Due-job poller follows the app lifecycle"""

    def test_poller_runs_between_startup_and_shutdown(self, facade):
        app = create_app(facade, AuditService(facade.store, facade.auditor), job_poll_seconds=0.05)
        assert facade.job_engine.is_polling is False
        with TestClient(app) as test_client:
            assert test_client.get("/api/health").status_code == 200
            assert facade.job_engine.is_polling is True
        assert facade.job_engine.is_polling is False

    def test_poller_disabled_by_default(self, client, facade):
        assert facade.job_engine.is_polling is False
