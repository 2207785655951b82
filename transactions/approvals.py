import logging
from typing import Callable, Iterable, Optional, Protocol

from . import state_machine
from .audit import AuditTrail
from .errors import (
    InvalidReasonError,
    InvalidStateTransitionError,
    LocalSyncFailedError,
    TransactionNotFoundError,
    TransactionServiceError,
)
from .ledger_client import RemoteResult, raise_for_remote
from .models import (
    ApprovalResult,
    BulkItemOutcome,
    BulkResult,
    RequestContext,
    Transaction,
    TransactionStatus,
)
from .state_machine import TransitionResult
from .storage import TransactionStore

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500


class LedgerApprovals(Protocol):
    def approve_transaction(self, transaction_id: str, approver_id: str, token: Optional[str] = None) -> RemoteResult:
        ...

    def reject_transaction(
        self,
        transaction_id: str,
        rejecter_id: str,
        reason: str,
        token: Optional[str] = None,
    ) -> RemoteResult:
        ...


class ApprovalOrchestrator:
    """
    Approves and rejects transactions on the Ledger Service and the local mirror.

    The Ledger Service is authoritative, so it is always called first and the
    local row is only touched after it confirms. The two writes are not atomic:
    when the remote side succeeds and the local write does not, the operation
    raises ``LocalSyncFailedError`` and leaves an audit record for repair.
    No row lock is held while waiting on the Ledger Service.
    """

    def __init__(self, store: TransactionStore, ledger_client: LedgerApprovals, audit: Optional[AuditTrail] = None):
        self.store = store
        self.ledger_client = ledger_client
        self.audit = audit or AuditTrail(store)

    def approve(self, transaction_id: str, context: RequestContext) -> ApprovalResult:
        return self._approve(transaction_id, context, action="transaction_approved")

    def reject(self, transaction_id: str, context: RequestContext, reason: str) -> ApprovalResult:
        return self._reject(transaction_id, context, self._clean_reason(reason), action="transaction_rejected")

    def bulk_approve(self, transaction_ids: Iterable[str], context: RequestContext) -> BulkResult:
        return self._bulk(
            transaction_ids,
            lambda transaction_id: self._approve(transaction_id, context, action="bulk_transaction_approved"),
        )

    def bulk_reject(self, transaction_ids: Iterable[str], context: RequestContext, reason: str) -> BulkResult:
        reason = self._clean_reason(reason)
        return self._bulk(
            transaction_ids,
            lambda transaction_id: self._reject(transaction_id, context, reason, action="bulk_transaction_rejected"),
        )

    def _approve(self, transaction_id: str, context: RequestContext, action: str) -> ApprovalResult:
        original = self._check_precondition(transaction_id, Transaction.can_be_approved, "approved")

        result = self.ledger_client.approve_transaction(transaction_id, context.actor_id, token=context.token)
        raise_for_remote(result, f"approve transaction {transaction_id}")

        transaction = self._apply_locally(
            transaction_id,
            context,
            lambda t: state_machine.approve(t, context.actor_id),
            TransactionStatus.COMPLETED,
        )
        self.audit.record(
            context,
            action,
            f"Approved transaction {transaction_id}",
            old_values={"status": original.status.value},
            new_values={"status": transaction.status.value},
        )
        return ApprovalResult(transaction=transaction, message="Transaction approved successfully")

    def _reject(self, transaction_id: str, context: RequestContext, reason: str, action: str) -> ApprovalResult:
        original = self._check_precondition(transaction_id, Transaction.can_be_rejected, "rejected")

        result = self.ledger_client.reject_transaction(transaction_id, context.actor_id, reason, token=context.token)
        raise_for_remote(result, f"reject transaction {transaction_id}")

        transaction = self._apply_locally(
            transaction_id,
            context,
            lambda t: state_machine.reject(t, context.actor_id),
            TransactionStatus.FAILED,
        )
        self.audit.record(
            context,
            action,
            f"Rejected transaction {transaction_id}. Reason: {reason}",
            old_values={"status": original.status.value},
            new_values={"status": transaction.status.value, "reason": reason},
        )
        return ApprovalResult(transaction=transaction, message="Transaction rejected successfully")

    def _bulk(self, transaction_ids: Iterable[str], operation: Callable[[str], ApprovalResult]) -> BulkResult:
        outcomes = []
        for transaction_id in dict.fromkeys(transaction_ids):
            try:
                result = operation(transaction_id)
            except TransactionServiceError as e:
                outcomes.append(BulkItemOutcome(
                    transaction_id=transaction_id, success=False, error_kind=e.kind, message=str(e),
                ))
                continue
            outcomes.append(BulkItemOutcome(transaction_id=transaction_id, success=True, message=result.message))

        succeeded = sum(1 for o in outcomes if o.success)
        logger.info(f"Bulk operation finished: {succeeded} succeeded, {len(outcomes) - succeeded} failed")
        return BulkResult(outcomes=outcomes, succeeded=succeeded, failed=len(outcomes) - succeeded)

    def _check_precondition(
        self,
        transaction_id: str,
        allowed: Callable[[Transaction], bool],
        verb: str,
    ) -> Transaction:
        with self.store.lock(transaction_id):
            transaction = self.store.get_transaction(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        if not allowed(transaction):
            raise InvalidStateTransitionError(
                f"Transaction {transaction_id} cannot be {verb} in {transaction.status.value} state"
            )
        return transaction

    def _apply_locally(
        self,
        transaction_id: str,
        context: RequestContext,
        transition: Callable[[Transaction], TransitionResult],
        target: TransactionStatus,
    ) -> Transaction:
        with self.store.lock(transaction_id):
            current = self.store.get_transaction(transaction_id)
            if current is not None and current.status == target:
                return current
            try:
                if current is None:
                    raise TransactionNotFoundError(f"Transaction {transaction_id} disappeared from the local store")
                outcome = transition(current)
                if not outcome.ok:
                    raise outcome.error
                return self.store.save_transaction(outcome.transaction)
            except Exception as e:
                self._report_sync_failure(transaction_id, context, target, e)
                raise LocalSyncFailedError(
                    f"Ledger Service accepted the change to {transaction_id} but the local update failed: {e}"
                ) from e

    def _report_sync_failure(
        self,
        transaction_id: str,
        context: RequestContext,
        target: TransactionStatus,
        error: Exception,
    ) -> None:
        logger.error(
            f"Local mirror out of sync for transaction {transaction_id}: remote is {target.value}, "
            f"local update failed with {type(error).__name__}: {error}"
        )
        self.audit.record(
            context,
            "transaction_sync_failed",
            f"Remote {target.value} for transaction {transaction_id} not reflected locally: {error}",
            new_values={"remote_status": target.value},
        )

    @staticmethod
    def _clean_reason(reason: Optional[str]) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise InvalidReasonError("A rejection reason is required")
        if len(reason) > MAX_REASON_LENGTH:
            raise InvalidReasonError(f"Rejection reason must be at most {MAX_REASON_LENGTH} characters")
        return reason
