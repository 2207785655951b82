"""
Transaction state machine.

    pending -> processing -> completed | failed
    pending -> completed | failed
    pending | processing -> cancelled

completed, failed and cancelled are terminal. Approval and rejection are admin
actions. Every other move, cancellation included, is reported by the gateway
or the Ledger Service and goes through ``apply_status``. Each transition is a
pure function: it returns a new ``Transaction`` (or the untouched input plus
an error) and never persists anything.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .errors import InvalidStateTransitionError
from .models import Transaction, TransactionStatus, utcnow


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset({
        TransactionStatus.PROCESSING,
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.PROCESSING: frozenset({
        TransactionStatus.COMPLETED,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    }),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


@dataclass(frozen=True)
class TransitionResult:
    transaction: Transaction
    error: Optional[InvalidStateTransitionError] = None
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def _rejected(transaction: Transaction, message: str) -> TransitionResult:
    return TransitionResult(transaction=transaction, error=InvalidStateTransitionError(message))


def approve(transaction: Transaction, actor: str, now: Optional[datetime] = None) -> TransitionResult:
    if not transaction.can_be_approved():
        return _rejected(
            transaction,
            f"Cannot approve transaction {transaction.transaction_id} in {transaction.status.value} state",
        )
    now = now or utcnow()
    updated = transaction.model_copy(update={
        "status": TransactionStatus.COMPLETED,
        "approved_by": actor,
        "approved_at": now,
        "processed_at": now,
    })
    return TransitionResult(transaction=updated, changed=True)


def reject(transaction: Transaction, actor: str, now: Optional[datetime] = None) -> TransitionResult:
    if not transaction.can_be_rejected():
        return _rejected(
            transaction,
            f"Cannot reject transaction {transaction.transaction_id} in {transaction.status.value} state. "
            "Only pending or processing transactions can be rejected.",
        )
    now = now or utcnow()
    updated = transaction.model_copy(update={
        "status": TransactionStatus.FAILED,
        "approved_by": actor,
        "approved_at": now,
        "processed_at": now,
    })
    return TransitionResult(transaction=updated, changed=True)


def apply_status(
    transaction: Transaction,
    target: TransactionStatus,
    now: Optional[datetime] = None,
) -> TransitionResult:
    """Settle a transaction to ``target`` as reported by a gateway or the Ledger Service."""
    if transaction.status == target:
        return TransitionResult(transaction=transaction)
    if not can_transition(transaction.status, target):
        return _rejected(
            transaction,
            f"Cannot move transaction {transaction.transaction_id} from "
            f"{transaction.status.value} to {target.value}",
        )
    updated = transaction.model_copy(update={"status": target, "processed_at": now or utcnow()})
    return TransitionResult(transaction=updated, changed=True)
