import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4
from pydantic import BaseModel, Field, ConfigDict, computed_field, field_validator, model_validator

from .errors import ErrorKind


DEFAULT_CURRENCY = "IDR"
CENT = Decimal("0.01")

_ID_ALPHABET = string.ascii_uppercase + string.digits


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _random_code(length: int) -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def generate_transaction_id() -> str:
    return f"TXN-{_random_code(10)}-{int(time.time())}"


def generate_reference() -> str:
    return f"REF-{_random_code(8)}"


class TransactionType(str, Enum):
    TOPUP = "topup"
    PAYMENT = "payment"
    TRANSFER = "transfer"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED)


class MappedStatus(str, Enum):
    """Output vocabulary of the status mappers: every local status plus ``unknown``."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    def as_transaction_status(self) -> Optional[TransactionStatus]:
        if self is MappedStatus.UNKNOWN:
            return None
        return TransactionStatus(self.value)


class Transaction(BaseModel):
    transaction_id: str = Field(default_factory=generate_transaction_id, min_length=1, max_length=100)
    reference: str = Field(default_factory=generate_reference, min_length=1, max_length=100)
    type: TransactionType = TransactionType.PAYMENT
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    fee: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)
    currency: str = Field(default=DEFAULT_CURRENCY, min_length=3, max_length=3)
    description: Optional[str] = None
    status: TransactionStatus = TransactionStatus.PENDING
    user_id: Optional[str] = None
    from_account: Optional[str] = None
    to_account: Optional[str] = None
    payment_gateway_id: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True, json_schema_extra={
        "example": {
            "transaction_id": "TXN-8Q2M4ZK1LD-1718000000",
            "reference": "REF-7HD2K9QA",
            "type": "topup",
            "amount": "100000.00",
            "fee": "0.00",
            "currency": "IDR",
            "status": "pending",
        }
    })

    @field_validator("amount", "fee")
    @classmethod
    def _two_decimal_places(cls, value: Decimal) -> Decimal:
        return value.quantize(CENT)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _transfer_needs_both_accounts(self) -> "Transaction":
        if self.type == TransactionType.TRANSFER and not (self.from_account and self.to_account):
            raise ValueError("transfer transactions require both from_account and to_account")
        return self

    @computed_field
    @property
    def total_amount(self) -> Decimal:
        return self.amount + self.fee

    def can_be_approved(self) -> bool:
        return self.status == TransactionStatus.PENDING

    def can_be_rejected(self) -> bool:
        return self.status in (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


class PaymentCallback(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    transaction_id: str
    gateway_transaction_id: str
    gateway_status: str
    fraud_status: Optional[str] = None
    mapped_status: MappedStatus
    raw_payload: dict[str, Any]
    signature: Optional[str] = None
    verified: bool = False
    received_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    note: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


class GatewayNotification(BaseModel):
    """Payment gateway notification body. Amount and codes stay as the literal wire strings."""

    order_id: str = Field(..., min_length=1)
    transaction_status: str = Field(..., min_length=1)
    status_code: str = Field(..., min_length=1)
    gross_amount: str = Field(..., min_length=1)
    signature_key: str = Field(..., min_length=1)
    fraud_status: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_type: Optional[str] = None

    model_config = ConfigDict(extra="allow", json_schema_extra={
        "example": {
            "order_id": "TXN-8Q2M4ZK1LD-1718000000",
            "transaction_status": "settlement",
            "status_code": "200",
            "gross_amount": "100000.00",
            "signature_key": "<sha512 hex>",
            "transaction_id": "9aed5972-5b6a-401e-894b-a32c91ed1a3a",
            "payment_type": "bank_transfer",
        }
    })


class LedgerNotification(BaseModel):
    transaction_id: str = Field(..., min_length=1)
    status: str = Field(..., min_length=1)
    timestamp: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    amount: Optional[Decimal] = None


@dataclass(frozen=True)
class RequestContext:
    """Actor identity and credentials of the request being served."""

    actor_id: str
    token: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class AuditRecord(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    actor_id: str
    action: str
    description: str
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(from_attributes=True)


class RejectRequest(BaseModel):
    reason: str = Field(..., description="Reason for rejection")


class BulkApproveRequest(BaseModel):
    transaction_ids: list[str] = Field(..., min_length=1)


class BulkRejectRequest(BaseModel):
    transaction_ids: list[str] = Field(..., min_length=1)
    reason: str = Field(..., description="Reason applied to every rejected transaction")


class ApprovalResult(BaseModel):
    transaction: Transaction
    message: str


class BulkItemOutcome(BaseModel):
    transaction_id: str
    success: bool
    error_kind: Optional[ErrorKind] = None
    message: str


class BulkResult(BaseModel):
    outcomes: list[BulkItemOutcome]
    succeeded: int
    failed: int


class WebhookReceipt(BaseModel):
    callback: PaymentCallback
    transaction: Optional[Transaction] = None
    processed: bool
    message: str


class SyncAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class SyncItemOutcome(BaseModel):
    transaction_id: str
    action: SyncAction
    status: Optional[TransactionStatus] = None
    error_kind: Optional[ErrorKind] = None
    message: str


class SyncResult(BaseModel):
    outcomes: list[SyncItemOutcome]
    created: int
    updated: int
    unchanged: int
    failed: int
    callbacks_processed: int
