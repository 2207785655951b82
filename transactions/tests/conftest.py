"""Pytest configuration and fixtures."""

import hashlib
from decimal import Decimal

import pytest

from transactions.ledger_client import RemoteResult
from transactions.models import Transaction, TransactionStatus, TransactionType
from transactions.signature import SignatureVerifier
from transactions.storage import TransactionStore
from transactions.webhooks import WebhookIngestor


SERVER_KEY = "SB-Mid-server-test-key"
ORDER_ID = "TXN-TEST-123"
GROSS_AMOUNT = "100000.00"


class FakeLedger:
    """Stands in for LedgerServiceClient; answers per transaction id and records every call."""

    def __init__(self):
        self.results: dict[str, RemoteResult] = {}
        self.default = RemoteResult(success=True, status_code=200)
        self.on_call = None
        self.calls: list[dict] = []
        self.records: list = []
        self.list_result = None

    def _respond(self, action, transaction_id, **kwargs):
        self.calls.append({"action": action, "transaction_id": transaction_id, **kwargs})
        if self.on_call:
            self.on_call(action, transaction_id)
        return self.results.get(transaction_id, self.default)

    def approve_transaction(self, transaction_id, approver_id, token=None):
        return self._respond("approve", transaction_id, actor=approver_id, token=token)

    def reject_transaction(self, transaction_id, rejecter_id, reason, token=None):
        return self._respond("reject", transaction_id, actor=rejecter_id, reason=reason, token=token)

    def fetch_transactions(self, filters=None, token=None):
        self.calls.append({"action": "list", "filters": filters, "token": token})
        return self.list_result or RemoteResult(success=True, status_code=200, data=self.records)


def sign(order_id, status_code, gross_amount, secret=SERVER_KEY):
    return hashlib.sha512(f"{order_id}{status_code}{gross_amount}{secret}".encode("utf-8")).hexdigest()


@pytest.fixture
def store():
    return TransactionStore()


@pytest.fixture
def verifier():
    return SignatureVerifier(SERVER_KEY)


@pytest.fixture
def ingestor(store, verifier):
    return WebhookIngestor(store, verifier)


@pytest.fixture
def fake_ledger():
    return FakeLedger()


@pytest.fixture
def make_transaction(store):
    """Create and store a transaction; defaults to a pending 100000.00 IDR top-up."""

    def _make(transaction_id=ORDER_ID, status=TransactionStatus.PENDING, amount="100000.00", **fields):
        fields.setdefault("type", TransactionType.TOPUP)
        transaction = Transaction(
            transaction_id=transaction_id,
            amount=Decimal(amount),
            status=status,
            **fields,
        )
        return store.add_transaction(transaction)

    return _make


@pytest.fixture
def gateway_payload():
    """Build a correctly signed gateway notification."""

    def _payload(
        transaction_status="settlement",
        order_id=ORDER_ID,
        status_code="200",
        gross_amount=GROSS_AMOUNT,
        secret=SERVER_KEY,
        **extra,
    ):
        payload = {
            "order_id": order_id,
            "transaction_status": transaction_status,
            "status_code": status_code,
            "gross_amount": gross_amount,
            "signature_key": sign(order_id, status_code, gross_amount, secret),
            "transaction_id": "midtrans-123",
            "payment_type": "bank_transfer",
        }
        payload.update(extra)
        return payload

    return _payload
