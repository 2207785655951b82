"""
Transaction Lifecycle and Webhook Reconciliation

This module provides:
- Transaction state machine: pending → processing → completed / failed, cancellation
- Idempotent ingestion of payment gateway webhooks with SHA-512 signature checks
- Status translation between gateway, Ledger Service and local vocabularies
- Remote-first approval and rejection against the Ledger Service
- Mirroring of Ledger Service transactions into the local store
- Audit-friendly structure
"""

from .models import (
    TransactionType,
    TransactionStatus,
    MappedStatus,
    Transaction,
    PaymentCallback,
    RequestContext,
)
from .approvals import ApprovalOrchestrator
from .ledger_client import LedgerServiceClient, RemoteResult
from .signature import SignatureVerifier
from .storage import TransactionStore
from .sync import TransactionSynchronizer
from .webhooks import WebhookIngestor

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "MappedStatus",
    "Transaction",
    "PaymentCallback",
    "RequestContext",
    "ApprovalOrchestrator",
    "LedgerServiceClient",
    "RemoteResult",
    "SignatureVerifier",
    "TransactionStore",
    "TransactionSynchronizer",
    "WebhookIngestor",
]
