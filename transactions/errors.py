from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    SIGNATURE_INVALID = "signature_invalid"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    INVALID_REASON = "invalid_reason"
    REMOTE_APPROVAL_FAILED = "remote_approval_failed"
    REMOTE_TIMEOUT = "remote_timeout"
    LOCAL_SYNC_FAILED = "local_sync_failed"
    STORAGE_ERROR = "storage_error"


class TransactionServiceError(Exception):
    kind: ErrorKind = ErrorKind.STORAGE_ERROR


class MalformedPayloadError(TransactionServiceError):
    kind = ErrorKind.MALFORMED_PAYLOAD

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class SignatureInvalidError(TransactionServiceError):
    kind = ErrorKind.SIGNATURE_INVALID


class InvalidStateTransitionError(TransactionServiceError):
    kind = ErrorKind.INVALID_STATE_TRANSITION


class TransactionNotFoundError(TransactionServiceError):
    kind = ErrorKind.TRANSACTION_NOT_FOUND


class InvalidReasonError(TransactionServiceError):
    kind = ErrorKind.INVALID_REASON


class RemoteApprovalFailedError(TransactionServiceError):
    kind = ErrorKind.REMOTE_APPROVAL_FAILED


class RemoteTimeoutError(TransactionServiceError):
    kind = ErrorKind.REMOTE_TIMEOUT


class LocalSyncFailedError(TransactionServiceError):
    """Remote Ledger Service accepted the change but the local mirror did not."""

    kind = ErrorKind.LOCAL_SYNC_FAILED


class StorageError(TransactionServiceError):
    kind = ErrorKind.STORAGE_ERROR
