"""Tests for the HTTP surface."""

import pytest
from fastapi.testclient import TestClient

from transactions.api import app
from transactions.config import Settings, get_settings
from transactions.dependencies import get_ledger_client, get_store
from transactions.ledger_client import RemoteFailure, RemoteResult
from transactions.models import TransactionStatus


SERVER_KEY = "SB-Mid-server-test-key"
LEDGER_API_KEY = "ledger-notify-key"
ORDER_ID = "TXN-TEST-123"
ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "Authorization": "Bearer admin-token"}


@pytest.fixture
def client(store, fake_ledger):
    settings = Settings(_env_file=None, gateway_server_key=SERVER_KEY, ledger_api_key=LEDGER_API_KEY)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_ledger_client] = lambda: fake_ledger
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "transaction-reconciler"}

    def test_webhook_health(self, client):
        response = client.get("/webhooks/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["version"] == "1.0.0"


class TestGatewayWebhook:
    """Tests for POST /webhooks/gateway/notification."""

    def test_settlement(self, client, store, make_transaction, gateway_payload):
        make_transaction()

        response = client.post("/webhooks/gateway/notification", json=gateway_payload("settlement"))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Webhook processed successfully"
        assert body["data"]["order_id"] == ORDER_ID
        assert body["data"]["status"] == "completed"
        assert body["data"]["processed"] is True
        assert store.get_transaction(ORDER_ID).status == TransactionStatus.COMPLETED

    def test_unknown_transaction_is_acknowledged(self, client, store, gateway_payload):
        """Test the gateway is not asked to retry a recorded but unmatched notification."""
        response = client.post("/webhooks/gateway/notification", json=gateway_payload("settlement"))

        assert response.status_code == 200
        assert response.json()["data"]["processed"] is False
        assert len(store.unprocessed_callbacks()) == 1

    def test_invalid_signature(self, client, store, make_transaction, gateway_payload):
        make_transaction()

        response = client.post("/webhooks/gateway/notification", json=gateway_payload("settlement", secret="nope"))

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid signature"}
        assert store.callbacks_for(ORDER_ID) == []

    def test_missing_fields(self, client):
        response = client.post("/webhooks/gateway/notification", json={"order_id": ORDER_ID})

        assert response.status_code == 400
        body = response.json()
        assert body["message"] == "Invalid payload format"
        assert {tuple(e["loc"]) for e in body["errors"]} >= {("signature_key",), ("gross_amount",)}

    def test_invalid_json(self, client):
        response = client.post(
            "/webhooks/gateway/notification",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["success"] is False


class TestLedgerWebhook:
    """Tests for POST /webhooks/ledger/notification."""

    def payload(self, status="approved", transaction_id=ORDER_ID):
        return {"transaction_id": transaction_id, "status": status, "timestamp": "2024-01-20T10:30:00Z"}

    def test_requires_api_key(self, client, make_transaction):
        make_transaction()

        missing = client.post("/webhooks/ledger/notification", json=self.payload())
        wrong = client.post("/webhooks/ledger/notification", json=self.payload(), headers={"X-API-Key": "wrong"})

        assert missing.status_code == 401
        assert wrong.status_code == 401

    def test_applies_status(self, client, store, make_transaction):
        make_transaction()

        response = client.post(
            "/webhooks/ledger/notification", json=self.payload(), headers={"X-API-Key": LEDGER_API_KEY},
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"transaction_id": ORDER_ID, "status": "completed"}
        assert store.get_transaction(ORDER_ID).status == TransactionStatus.COMPLETED

    def test_repeated_status(self, client, make_transaction):
        make_transaction(status=TransactionStatus.COMPLETED)

        response = client.post(
            "/webhooks/ledger/notification", json=self.payload(), headers={"X-API-Key": LEDGER_API_KEY},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Status already applied"

    def test_unknown_transaction(self, client):
        response = client.post(
            "/webhooks/ledger/notification", json=self.payload(), headers={"X-API-Key": LEDGER_API_KEY},
        )

        assert response.status_code == 404

    def test_illegal_transition(self, client, make_transaction):
        make_transaction(status=TransactionStatus.FAILED)

        response = client.post(
            "/webhooks/ledger/notification", json=self.payload("approved"), headers={"X-API-Key": LEDGER_API_KEY},
        )

        assert response.status_code == 409

    def test_malformed(self, client):
        response = client.post(
            "/webhooks/ledger/notification", json={"status": "approved"}, headers={"X-API-Key": LEDGER_API_KEY},
        )

        assert response.status_code == 400


class TestAdminApprovals:
    """Tests for the admin approval endpoints."""

    def test_actor_required(self, client, make_transaction, fake_ledger):
        make_transaction()

        response = client.post(f"/admin/transactions/{ORDER_ID}/approve")

        assert response.status_code == 401
        assert fake_ledger.calls == []

    def test_approve(self, client, store, make_transaction, fake_ledger):
        make_transaction()

        response = client.post(f"/admin/transactions/{ORDER_ID}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["transaction"]["status"] == "completed"
        assert body["transaction"]["approved_by"] == "admin-1"
        assert fake_ledger.calls[0]["token"] == "admin-token"
        assert store.get_transaction(ORDER_ID).status == TransactionStatus.COMPLETED

    def test_approve_unknown(self, client):
        response = client.post("/admin/transactions/TXN-MISSING/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["detail"]["error_kind"] == "transaction_not_found"

    def test_approve_completed_conflicts(self, client, make_transaction):
        make_transaction(status=TransactionStatus.COMPLETED)

        response = client.post(f"/admin/transactions/{ORDER_ID}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == 409

    @pytest.mark.parametrize(
        "failure, status_code, error_kind",
        [
            (RemoteFailure.HTTP_ERROR, 502, "remote_approval_failed"),
            (RemoteFailure.UNAVAILABLE, 502, "remote_approval_failed"),
            (RemoteFailure.TIMEOUT, 504, "remote_timeout"),
        ],
    )
    def test_remote_failures(self, client, store, make_transaction, fake_ledger, failure, status_code, error_kind):
        make_transaction()
        fake_ledger.default = RemoteResult(success=False, failure=failure)

        response = client.post(f"/admin/transactions/{ORDER_ID}/approve", headers=ADMIN_HEADERS)

        assert response.status_code == status_code
        assert response.json()["detail"]["error_kind"] == error_kind
        assert store.get_transaction(ORDER_ID).status == TransactionStatus.PENDING

    def test_reject(self, client, make_transaction):
        make_transaction()

        response = client.post(
            f"/admin/transactions/{ORDER_ID}/reject", json={"reason": "Suspicious"}, headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["transaction"]["status"] == "failed"

    def test_reject_without_reason(self, client, make_transaction, fake_ledger):
        make_transaction()

        response = client.post(f"/admin/transactions/{ORDER_ID}/reject", json={"reason": "  "}, headers=ADMIN_HEADERS)

        assert response.status_code == 422
        assert response.json()["detail"]["error_kind"] == "invalid_reason"
        assert fake_ledger.calls == []

    def test_bulk_approve(self, client, make_transaction):
        make_transaction("TXN-1")
        make_transaction("TXN-2", status=TransactionStatus.FAILED)

        response = client.post(
            "/admin/transactions/bulk-approve",
            json={"transaction_ids": ["TXN-1", "TXN-2"]},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["succeeded"] == 1
        assert body["failed"] == 1
        assert body["outcomes"][1]["error_kind"] == "invalid_state_transition"

    def test_bulk_reject_requires_reason(self, client, make_transaction):
        make_transaction("TXN-1")

        response = client.post(
            "/admin/transactions/bulk-reject",
            json={"transaction_ids": ["TXN-1"], "reason": ""},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 422


class TestAdminQueries:
    """Tests for the admin read and reconciliation endpoints."""

    def test_get_transaction_and_callbacks(self, client, make_transaction, gateway_payload):
        make_transaction()
        client.post("/webhooks/gateway/notification", json=gateway_payload("settlement"))

        transaction = client.get(f"/admin/transactions/{ORDER_ID}", headers=ADMIN_HEADERS)
        callbacks = client.get(f"/admin/transactions/{ORDER_ID}/callbacks", headers=ADMIN_HEADERS)

        assert transaction.status_code == 200
        assert transaction.json()["status"] == "completed"
        assert transaction.json()["amount"] == "100000.00"
        assert len(callbacks.json()) == 1
        assert callbacks.json()[0]["gateway_status"] == "settlement"

    def test_get_unknown_transaction(self, client):
        response = client.get("/admin/transactions/TXN-MISSING", headers=ADMIN_HEADERS)

        assert response.status_code == 404

    def test_reconcile_unprocessed(self, client, make_transaction, gateway_payload):
        client.post("/webhooks/gateway/notification", json=gateway_payload("settlement"))
        assert len(client.get("/admin/callbacks/unprocessed", headers=ADMIN_HEADERS).json()) == 1

        make_transaction()
        response = client.post("/admin/callbacks/reconcile", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert [r["processed"] for r in response.json()] == [True]
        assert client.get("/admin/callbacks/unprocessed", headers=ADMIN_HEADERS).json() == []

    def test_audit_trail(self, client, make_transaction):
        make_transaction()
        client.post(f"/admin/transactions/{ORDER_ID}/approve", headers=ADMIN_HEADERS)

        response = client.get("/admin/audit", params={"actor_id": "admin-1"}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert [r["action"] for r in response.json()] == ["transaction_approved"]

    def test_list_transactions(self, client, make_transaction):
        make_transaction("TXN-1", fee="2500.00")
        make_transaction("TXN-2", status=TransactionStatus.COMPLETED, type="payment")

        everything = client.get("/admin/transactions", headers=ADMIN_HEADERS)
        completed = client.get("/admin/transactions", params={"status": "completed"}, headers=ADMIN_HEADERS)
        topups = client.get("/admin/transactions", params={"type": "topup"}, headers=ADMIN_HEADERS)

        assert everything.status_code == 200
        assert {t["transaction_id"] for t in everything.json()} == {"TXN-1", "TXN-2"}
        assert [t["transaction_id"] for t in completed.json()] == ["TXN-2"]
        assert [t["transaction_id"] for t in topups.json()] == ["TXN-1"]
        assert topups.json()[0]["total_amount"] == "102500.00"

    def test_list_transactions_unknown_status(self, client):
        response = client.get("/admin/transactions", params={"status": "lost"}, headers=ADMIN_HEADERS)

        assert response.status_code == 422


class TestTransactionSync:
    """Tests for POST /admin/transactions/sync."""

    def remote(self, transaction_id, status):
        return {"id": transaction_id, "reference": f"REF-{transaction_id}", "type": "topup",
                "amount": "100000.00", "status": status}

    def test_sync_mirrors_and_settles(self, client, store, make_transaction, fake_ledger):
        make_transaction("TXN-KNOWN")
        fake_ledger.records = [
            self.remote("TXN-KNOWN", "approved"),
            self.remote("TXN-NEW", "pending"),
            {"id": "TXN-BAD"},
        ]

        response = client.post("/admin/transactions/sync", params={"status": "pending"}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert (body["created"], body["updated"], body["unchanged"], body["failed"]) == (1, 1, 0, 1)
        assert [o["action"] for o in body["outcomes"]] == ["updated", "created", "failed"]
        assert body["outcomes"][2]["error_kind"] == "malformed_payload"
        assert store.get_transaction("TXN-KNOWN").status == TransactionStatus.COMPLETED
        assert store.get_transaction("TXN-NEW").status == TransactionStatus.PENDING
        assert fake_ledger.calls == [{"action": "list", "filters": {"status": "pending"}, "token": "admin-token"}]

    def test_early_settlement_applied_by_sync(self, client, store, fake_ledger, gateway_payload):
        """Test a gateway settlement for an unseen transaction lands once the transaction is synced."""
        client.post("/webhooks/gateway/notification", json=gateway_payload("settlement"))
        fake_ledger.records = [self.remote(ORDER_ID, "pending")]

        response = client.post("/admin/transactions/sync", headers=ADMIN_HEADERS)

        assert response.json()["callbacks_processed"] == 1
        assert store.get_transaction(ORDER_ID).status == TransactionStatus.COMPLETED
        assert fake_ledger.calls[0]["filters"] is None

    @pytest.mark.parametrize(
        "failure, status_code, error_kind",
        [
            (RemoteFailure.UNAVAILABLE, 502, "remote_approval_failed"),
            (RemoteFailure.TIMEOUT, 504, "remote_timeout"),
        ],
    )
    def test_listing_failure(self, client, store, fake_ledger, failure, status_code, error_kind):
        fake_ledger.list_result = RemoteResult(success=False, failure=failure)

        response = client.post("/admin/transactions/sync", headers=ADMIN_HEADERS)

        assert response.status_code == status_code
        assert response.json()["detail"]["error_kind"] == error_kind
        assert store.list_transactions() == []

    def test_actor_required(self, client, fake_ledger):
        response = client.post("/admin/transactions/sync")

        assert response.status_code == 401
        assert fake_ledger.calls == []


class TestLifespan:
    def test_shutdown_closes_ledger_client(self):
        get_ledger_client.cache_clear()
        ledger_client = get_ledger_client()

        with TestClient(app):
            pass

        assert ledger_client.client.is_closed
        assert get_ledger_client.cache_info().currsize == 0
