"""
Status vocabulary translation.

The payment gateway and the remote Ledger Service each speak their own status
vocabulary. Raw strings are parsed into tagged values first (an enum member or
``UnknownStatus``) and only then mapped, so every input has a defined outcome.
Both mappers are pure: the same input always yields the same local status,
which replayed webhooks rely on.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .models import MappedStatus, TransactionStatus


class GatewayStatus(str, Enum):
    SETTLEMENT = "settlement"
    CAPTURE = "capture"
    PENDING = "pending"
    DENY = "deny"
    CANCEL = "cancel"
    EXPIRE = "expire"
    FAILURE = "failure"


class FraudStatus(str, Enum):
    ACCEPT = "accept"
    CHALLENGE = "challenge"
    DENY = "deny"


class RemoteStatus(str, Enum):
    APPROVED = "approved"
    COMPLETED = "completed"
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    PENDING = "pending"


@dataclass(frozen=True)
class UnknownStatus:
    raw: str


GATEWAY_STATUS_MAP: dict[GatewayStatus, MappedStatus] = {
    GatewayStatus.SETTLEMENT: MappedStatus.COMPLETED,
    GatewayStatus.CAPTURE: MappedStatus.COMPLETED,
    GatewayStatus.PENDING: MappedStatus.PROCESSING,
    GatewayStatus.DENY: MappedStatus.FAILED,
    GatewayStatus.CANCEL: MappedStatus.FAILED,
    GatewayStatus.EXPIRE: MappedStatus.FAILED,
    GatewayStatus.FAILURE: MappedStatus.FAILED,
}

REMOTE_STATUS_MAP: dict[RemoteStatus, TransactionStatus] = {
    RemoteStatus.APPROVED: TransactionStatus.COMPLETED,
    RemoteStatus.COMPLETED: TransactionStatus.COMPLETED,
    RemoteStatus.SUCCESS: TransactionStatus.COMPLETED,
    RemoteStatus.REJECTED: TransactionStatus.FAILED,
    RemoteStatus.FAILED: TransactionStatus.FAILED,
    RemoteStatus.PROCESSING: TransactionStatus.PROCESSING,
    RemoteStatus.CANCELLED: TransactionStatus.CANCELLED,
    RemoteStatus.PENDING: TransactionStatus.PENDING,
}


def _normalize(raw: Any) -> str:
    if raw is None:
        return ""
    if not isinstance(raw, str):
        raw = repr(raw)
    return raw.strip().lower()


def parse_gateway_status(raw: Any) -> Union[GatewayStatus, UnknownStatus]:
    value = _normalize(raw)
    try:
        return GatewayStatus(value)
    except ValueError:
        return UnknownStatus(raw=value)


def parse_fraud_status(raw: Any) -> Union[FraudStatus, UnknownStatus, None]:
    if raw is None:
        return None
    value = _normalize(raw)
    try:
        return FraudStatus(value)
    except ValueError:
        return UnknownStatus(raw=value)


def parse_remote_status(raw: Any) -> Union[RemoteStatus, UnknownStatus]:
    value = _normalize(raw)
    try:
        return RemoteStatus(value)
    except ValueError:
        return UnknownStatus(raw=value)


def map_gateway_status(raw_status: Any, fraud_status: Optional[Any] = None) -> MappedStatus:
    """Map a gateway status (and fraud sub-status) to the local vocabulary.

    A ``capture`` flagged ``challenge`` by the risk engine is still under review
    and maps to ``processing``. Unrecognised statuses map to ``unknown``.
    """
    status = parse_gateway_status(raw_status)
    if isinstance(status, UnknownStatus):
        return MappedStatus.UNKNOWN
    if status is GatewayStatus.CAPTURE and parse_fraud_status(fraud_status) is FraudStatus.CHALLENGE:
        return MappedStatus.PROCESSING
    return GATEWAY_STATUS_MAP[status]


def map_remote_status(raw_status: Any) -> TransactionStatus:
    """Map a Ledger Service status to the local vocabulary, defaulting to ``pending``."""
    status = parse_remote_status(raw_status)
    if isinstance(status, UnknownStatus):
        return TransactionStatus.PENDING
    return REMOTE_STATUS_MAP[status]
