"""
Payment gateway webhook ingestion.

Notifications are delivered at least once and possibly out of order. Every
verified notification is stored as a PaymentCallback before the owning
transaction is even looked up, so a raw notification is never lost. The
callback is marked processed only once the transaction agrees with it.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from . import state_machine
from .errors import (
    MalformedPayloadError,
    SignatureInvalidError,
    TransactionNotFoundError,
)
from .models import (
    GatewayNotification,
    LedgerNotification,
    MappedStatus,
    PaymentCallback,
    WebhookReceipt,
)
from .signature import SignatureVerifier
from .state_machine import TransitionResult
from .status_mapping import map_gateway_status, map_remote_status
from .storage import TransactionStore

logger = logging.getLogger(__name__)

NOTE_UNKNOWN_STATUS = "unknown_status"
NOTE_NOT_FOUND = "transaction_not_found"
NOTE_AMOUNT_MISMATCH = "amount_mismatch"
NOTE_INVALID_TRANSITION = "invalid_transition"


def _validation_errors(error: ValidationError) -> list:
    return error.errors(include_url=False, include_context=False, include_input=False)


class WebhookIngestor:
    def __init__(self, store: TransactionStore, verifier: SignatureVerifier):
        self.store = store
        self.verifier = verifier

    def ingest(self, payload: Any) -> WebhookReceipt:
        try:
            notification = GatewayNotification.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Invalid webhook payload: {e.error_count()} validation error(s)")
            raise MalformedPayloadError("Invalid payload format", _validation_errors(e)) from e

        if not self.verifier.verify_notification(notification):
            logger.warning(
                f"Invalid webhook signature for order {notification.order_id} "
                f"(status={notification.transaction_status}, status_code={notification.status_code})"
            )
            raise SignatureInvalidError(f"Invalid signature for order {notification.order_id}")

        mapped = map_gateway_status(notification.transaction_status, notification.fraud_status)
        callback = self.store.add_callback(PaymentCallback(
            transaction_id=notification.order_id,
            gateway_transaction_id=notification.transaction_id or notification.order_id,
            gateway_status=notification.transaction_status,
            fraud_status=notification.fraud_status,
            mapped_status=mapped,
            raw_payload=dict(payload),
            signature=notification.signature_key,
            verified=True,
        ))
        logger.info(
            f"Recorded payment callback {callback.id} for order {callback.transaction_id} "
            f"(gateway_status={callback.gateway_status}, mapped={mapped.value})"
        )
        return self._reconcile(callback)

    def reconcile_unprocessed(self) -> list[WebhookReceipt]:
        """Retry matching every verified callback still waiting for its transaction."""
        receipts = [self._reconcile(c) for c in self.store.unprocessed_callbacks() if c.verified]
        processed = sum(1 for r in receipts if r.processed)
        logger.info(f"Reconciled {processed} of {len(receipts)} unprocessed payment callbacks")
        return receipts

    def _reconcile(self, callback: PaymentCallback) -> WebhookReceipt:
        target = callback.mapped_status.as_transaction_status()
        if callback.mapped_status is MappedStatus.UNKNOWN or target is None:
            logger.warning(f"Unrecognised gateway status {callback.gateway_status!r} on callback {callback.id}")
            return self._leave_unprocessed(callback, NOTE_UNKNOWN_STATUS, "Callback recorded; gateway status not recognised")

        with self.store.lock(callback.transaction_id):
            transaction = self.store.get_transaction(callback.transaction_id)
            if transaction is None:
                logger.info(f"No local transaction {callback.transaction_id} yet; callback {callback.id} left unprocessed")
                return self._leave_unprocessed(callback, NOTE_NOT_FOUND, "Callback recorded; transaction not found")

            if not self._amount_matches(callback, transaction.amount):
                logger.warning(
                    f"Gross amount {callback.raw_payload.get('gross_amount')!r} of callback {callback.id} "
                    f"does not match transaction {transaction.transaction_id} amount {transaction.amount}"
                )
                return self._leave_unprocessed(
                    callback, NOTE_AMOUNT_MISMATCH, "Callback recorded; gross amount mismatch", transaction,
                )

            if transaction.status == target:
                callback = self.store.mark_callback_processed(callback.id)
                return WebhookReceipt(
                    callback=callback,
                    transaction=transaction,
                    processed=True,
                    message="Webhook already applied",
                )

            outcome = state_machine.apply_status(transaction, target)
            if not outcome.ok:
                logger.warning(f"Skipping callback {callback.id}: {outcome.error}")
                return self._leave_unprocessed(
                    callback, NOTE_INVALID_TRANSITION, "Callback recorded; transition not permitted", transaction,
                )

            saved = self.store.save_transaction(outcome.transaction)
            callback = self.store.mark_callback_processed(callback.id)

        logger.info(
            f"Transaction {saved.transaction_id} status updated via webhook: "
            f"{transaction.status.value} -> {saved.status.value} (gateway_status={callback.gateway_status})"
        )
        return WebhookReceipt(
            callback=callback,
            transaction=saved,
            processed=True,
            message="Webhook processed successfully",
        )

    def _leave_unprocessed(self, callback, note, message, transaction=None) -> WebhookReceipt:
        callback = self.store.annotate_callback(callback.id, note)
        return WebhookReceipt(callback=callback, transaction=transaction, processed=False, message=message)

    @staticmethod
    def _amount_matches(callback: PaymentCallback, amount: Decimal) -> bool:
        try:
            return Decimal(str(callback.raw_payload.get("gross_amount"))) == amount
        except InvalidOperation:
            return False

    def ingest_ledger_notification(self, payload: Any) -> TransitionResult:
        """Apply a status pushed by the Ledger Service, using its own status vocabulary."""
        try:
            notification = LedgerNotification.model_validate(payload)
        except ValidationError as e:
            raise MalformedPayloadError("Invalid payload format", _validation_errors(e)) from e

        target = map_remote_status(notification.status)
        with self.store.lock(notification.transaction_id):
            transaction = self.store.get_transaction(notification.transaction_id)
            if transaction is None:
                logger.warning(f"Transaction {notification.transaction_id} not found for Ledger Service notification")
                raise TransactionNotFoundError(f"Transaction {notification.transaction_id} not found")

            outcome = state_machine.apply_status(transaction, target)
            if not outcome.ok:
                raise outcome.error
            if not outcome.changed:
                return outcome
            saved = self.store.save_transaction(outcome.transaction)

        logger.info(
            f"Transaction {saved.transaction_id} status updated by Ledger Service: "
            f"{transaction.status.value} -> {saved.status.value} (remote_status={notification.status})"
        )
        return TransitionResult(transaction=saved, changed=True)
