import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterator, Optional
from uuid import UUID

from .errors import InvalidStateTransitionError, StorageError
from .models import (
    AuditRecord,
    PaymentCallback,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from .state_machine import can_transition

logger = logging.getLogger(__name__)


class InMemoryStorage:
    def __init__(self):
        self.transactions: dict[str, Transaction] = {}
        self.reference_index: dict[str, str] = {}
        self.callbacks: dict[UUID, PaymentCallback] = {}
        self.audit_records: list[AuditRecord] = []


@dataclass
class _RowLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class TransactionStore:
    """Local mirror of transactions, payment callbacks and audit records.

    A transaction row is the unit of mutual exclusion: callers wrap a
    read-check-write sequence in ``lock(transaction_id)``. Saves re-check the
    state machine against the stored row so an illegal status change can never
    be persisted, whatever the caller did.

    Nothing here survives the process. Row locks are dropped as soon as no
    caller holds or waits on them.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage or InMemoryStorage()
        self._row_locks: dict[str, _RowLock] = {}
        self._row_locks_guard = threading.Lock()
        self._write_lock = threading.RLock()

    @contextmanager
    def lock(self, transaction_id: str) -> Iterator[None]:
        with self._row_locks_guard:
            row_lock = self._row_locks.setdefault(transaction_id, _RowLock())
            row_lock.holders += 1
        try:
            with row_lock.lock:
                yield
        finally:
            with self._row_locks_guard:
                row_lock.holders -= 1
                if row_lock.holders == 0:
                    del self._row_locks[transaction_id]

    def add_transaction(self, transaction: Transaction) -> Transaction:
        with self._write_lock:
            if transaction.transaction_id in self.storage.transactions:
                raise StorageError(f"Transaction {transaction.transaction_id} already exists")
            if transaction.reference in self.storage.reference_index:
                raise StorageError(f"Reference {transaction.reference} already in use")
            self.storage.transactions[transaction.transaction_id] = transaction
            self.storage.reference_index[transaction.reference] = transaction.transaction_id
        logger.info(f"Recorded transaction {transaction.transaction_id} ({transaction.type.value}, {transaction.status.value})")
        return transaction

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.storage.transactions.get(transaction_id)

    def save_transaction(self, transaction: Transaction) -> Transaction:
        with self._write_lock:
            existing = self.storage.transactions.get(transaction.transaction_id)
            if existing is None:
                raise StorageError(f"Transaction {transaction.transaction_id} does not exist")
            if existing.reference != transaction.reference:
                raise StorageError(f"Reference of transaction {transaction.transaction_id} cannot change")
            if existing.status != transaction.status and not can_transition(existing.status, transaction.status):
                raise InvalidStateTransitionError(
                    f"Cannot persist transaction {transaction.transaction_id} moving from "
                    f"{existing.status.value} to {transaction.status.value}"
                )
            saved = transaction.model_copy(update={"updated_at": utcnow()})
            self.storage.transactions[saved.transaction_id] = saved
        return saved

    def list_transactions(
        self,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
    ) -> list[Transaction]:
        transactions = [
            t for t in self.storage.transactions.values()
            if (status is None or t.status == status) and (type is None or t.type == type)
        ]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def add_callback(self, callback: PaymentCallback) -> PaymentCallback:
        with self._write_lock:
            if callback.id in self.storage.callbacks:
                raise StorageError(f"Payment callback {callback.id} already recorded")
            self.storage.callbacks[callback.id] = callback
        return callback

    def get_callback(self, callback_id: UUID) -> Optional[PaymentCallback]:
        return self.storage.callbacks.get(callback_id)

    def mark_callback_processed(self, callback_id: UUID, processed_at: Optional[datetime] = None) -> PaymentCallback:
        with self._write_lock:
            callback = self._require_callback(callback_id)
            if callback.processed_at is not None:
                return callback
            updated = callback.model_copy(update={"processed_at": processed_at or utcnow(), "note": None})
            self.storage.callbacks[callback_id] = updated
        return updated

    def annotate_callback(self, callback_id: UUID, note: str) -> PaymentCallback:
        with self._write_lock:
            callback = self._require_callback(callback_id)
            if callback.processed_at is not None:
                return callback
            updated = callback.model_copy(update={"note": note})
            self.storage.callbacks[callback_id] = updated
        return updated

    def callbacks_for(self, transaction_id: str) -> list[PaymentCallback]:
        callbacks = [c for c in self.storage.callbacks.values() if c.transaction_id == transaction_id]
        callbacks.sort(key=lambda c: c.received_at)
        return callbacks

    def unprocessed_callbacks(self) -> list[PaymentCallback]:
        callbacks = [c for c in self.storage.callbacks.values() if c.processed_at is None]
        callbacks.sort(key=lambda c: c.received_at)
        return callbacks

    def add_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._write_lock:
            self.storage.audit_records.append(record)
        return record

    def audit_records(self, actor_id: Optional[str] = None, action: Optional[str] = None) -> list[AuditRecord]:
        return [
            r for r in self.storage.audit_records
            if (actor_id is None or r.actor_id == actor_id) and (action is None or r.action == action)
        ]

    def _require_callback(self, callback_id: UUID) -> PaymentCallback:
        callback = self.storage.callbacks.get(callback_id)
        if callback is None:
            raise StorageError(f"Payment callback {callback_id} not found")
        return callback
