"""
Mirroring of Ledger Service transactions into the local store.

The Ledger Service decides which transactions exist. A sync pulls its records,
inserts the ids the local store has not seen yet and settles known rows to the
remote status through the state machine. Payment callbacks that arrived before
their transaction are retried once the records are in.
"""

import logging
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from . import state_machine
from .audit import AuditTrail
from .errors import MalformedPayloadError, RemoteApprovalFailedError, TransactionServiceError
from .ledger_client import RemoteResult, raise_for_remote, transaction_from_remote
from .models import (
    DEFAULT_CURRENCY,
    RequestContext,
    SyncAction,
    SyncItemOutcome,
    SyncResult,
    Transaction,
)
from .storage import TransactionStore
from .webhooks import WebhookIngestor

logger = logging.getLogger(__name__)


class LedgerTransactions(Protocol):
    def fetch_transactions(self, filters: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> RemoteResult:
        ...


class TransactionSynchronizer:
    def __init__(
        self,
        store: TransactionStore,
        ledger_client: LedgerTransactions,
        ingestor: WebhookIngestor,
        audit: Optional[AuditTrail] = None,
        default_currency: str = DEFAULT_CURRENCY,
    ):
        self.store = store
        self.ledger_client = ledger_client
        self.ingestor = ingestor
        self.audit = audit or AuditTrail(store)
        self.default_currency = default_currency

    def sync(self, context: RequestContext, filters: Optional[dict[str, Any]] = None) -> SyncResult:
        """
        Pull transactions from the Ledger Service into the local mirror.

        Each record is applied on its own: a malformed record or an illegal
        status change is reported in its outcome and does not stop the rest.
        A failed listing call raises before anything local changes.
        """
        result = self.ledger_client.fetch_transactions(filters, token=context.token)
        raise_for_remote(result, "list transactions")
        if not isinstance(result.data, list):
            raise RemoteApprovalFailedError("Ledger Service returned no transaction list")

        outcomes = [self._sync_record(record) for record in result.data]
        receipts = self.ingestor.reconcile_unprocessed()

        counts = {action: sum(1 for o in outcomes if o.action is action) for action in SyncAction}
        sync_result = SyncResult(
            outcomes=outcomes,
            created=counts[SyncAction.CREATED],
            updated=counts[SyncAction.UPDATED],
            unchanged=counts[SyncAction.UNCHANGED],
            failed=counts[SyncAction.FAILED],
            callbacks_processed=sum(1 for r in receipts if r.processed),
        )
        logger.info(
            f"Transaction sync completed: {sync_result.created} created, {sync_result.updated} updated, "
            f"{sync_result.unchanged} unchanged, {sync_result.failed} failed, "
            f"{sync_result.callbacks_processed} callbacks processed"
        )
        self.audit.record(
            context,
            "transactions_synced",
            f"Synced {len(outcomes)} transactions from the Ledger Service",
            new_values=sync_result.model_dump(include={"created", "updated", "unchanged", "failed"}),
        )
        return sync_result

    def _sync_record(self, record: Any) -> SyncItemOutcome:
        transaction_id = ""
        if isinstance(record, dict):
            transaction_id = str(record.get("transaction_id") or record.get("id") or "")
        try:
            remote = self._parse(record)
            return self._apply(remote)
        except TransactionServiceError as e:
            logger.warning(f"Failed to sync transaction {transaction_id or '<unknown>'}: {e}")
            return SyncItemOutcome(
                transaction_id=transaction_id,
                action=SyncAction.FAILED,
                error_kind=e.kind,
                message=str(e),
            )

    def _parse(self, record: Any) -> Transaction:
        if not isinstance(record, dict):
            raise MalformedPayloadError("Ledger Service record is not an object")
        try:
            return transaction_from_remote(record, self.default_currency)
        except ValidationError as e:
            raise MalformedPayloadError(
                f"Invalid Ledger Service record: {e.error_count()} validation error(s)",
                e.errors(include_url=False, include_context=False, include_input=False),
            ) from e

    def _apply(self, remote: Transaction) -> SyncItemOutcome:
        with self.store.lock(remote.transaction_id):
            local = self.store.get_transaction(remote.transaction_id)
            if local is None:
                created = self.store.add_transaction(remote)
                return SyncItemOutcome(
                    transaction_id=created.transaction_id,
                    action=SyncAction.CREATED,
                    status=created.status,
                    message="Transaction mirrored from the Ledger Service",
                )

            outcome = state_machine.apply_status(local, remote.status, now=remote.processed_at)
            if not outcome.ok:
                raise outcome.error
            if not outcome.changed:
                return SyncItemOutcome(
                    transaction_id=local.transaction_id,
                    action=SyncAction.UNCHANGED,
                    status=local.status,
                    message="Already in sync",
                )
            saved = self.store.save_transaction(outcome.transaction)

        logger.info(
            f"Transaction {saved.transaction_id} status updated by sync: "
            f"{local.status.value} -> {saved.status.value}"
        )
        return SyncItemOutcome(
            transaction_id=saved.transaction_id,
            action=SyncAction.UPDATED,
            status=saved.status,
            message=f"Status updated from {local.status.value} to {saved.status.value}",
        )
