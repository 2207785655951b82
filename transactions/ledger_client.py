"""HTTP client for the remote Ledger Service."""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import RemoteApprovalFailedError, RemoteTimeoutError
from .models import DEFAULT_CURRENCY, Transaction, utcnow
from .status_mapping import map_remote_status

logger = logging.getLogger(__name__)


class RemoteFailure(str, Enum):
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    HTTP_ERROR = "http_error"
    REJECTED = "rejected"
    INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class RemoteResult:
    """Outcome of one Ledger Service call. Remote unavailability is a value, not an exception."""

    success: bool
    failure: Optional[RemoteFailure] = None
    status_code: Optional[int] = None
    data: Any = None
    error: Optional[str] = None

    @property
    def timed_out(self) -> bool:
        return self.failure is RemoteFailure.TIMEOUT


def raise_for_remote(result: RemoteResult, action: str) -> None:
    """Turn a failed RemoteResult into the matching service error."""
    if result.success:
        return
    if result.timed_out:
        raise RemoteTimeoutError(f"Ledger Service timed out while trying to {action}")
    detail = result.error or (f"HTTP {result.status_code}" if result.status_code else "no response")
    raise RemoteApprovalFailedError(f"Ledger Service failed to {action}: {detail}")


def _unwrap(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


def transaction_from_remote(payload: dict[str, Any], default_currency: str = DEFAULT_CURRENCY) -> Transaction:
    """Build a local Transaction from a Ledger Service record, translating its status vocabulary."""
    fields: dict[str, Any] = {
        "transaction_id": str(payload.get("transaction_id") or payload.get("id") or ""),
        "type": payload.get("type") or "payment",
        "amount": payload.get("amount"),
        "fee": payload.get("fee") or Decimal("0.00"),
        "currency": payload.get("currency") or default_currency,
        "description": payload.get("description"),
        "status": map_remote_status(payload.get("status")),
        "user_id": payload.get("user_id"),
        "from_account": payload.get("from_account_id"),
        "to_account": payload.get("to_account_id"),
        "payment_gateway_id": payload.get("payment_gateway_id"),
        "payment_method": payload.get("payment_method"),
        "metadata": payload.get("metadata") or {},
        "approved_by": payload.get("approved_by"),
        "approved_at": payload.get("approved_at"),
        "processed_at": payload.get("processed_at"),
        "created_at": payload.get("created_at") or utcnow(),
    }
    if payload.get("reference"):
        fields["reference"] = payload["reference"]
    for key in ("user_id", "from_account", "to_account", "approved_by"):
        if fields[key] is not None:
            fields[key] = str(fields[key])
    return Transaction(**fields)


class LedgerServiceClient:
    """
    Typed client for the Ledger Service.

    Every call has a bounded timeout. Network failures and non-2xx responses
    are returned as ``RemoteResult`` values (or ``None`` for lookups) and are
    logged here; nothing from httpx escapes to the caller.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        retries: int = 0,
        transport: Optional[httpx.BaseTransport] = None,
        default_currency: str = DEFAULT_CURRENCY,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.default_currency = default_currency

        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if api_key:
            headers["X-API-Key"] = api_key

        self.client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport or httpx.HTTPTransport(retries=retries),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LedgerServiceClient":
        return cls(
            base_url=settings.ledger_service_url,
            api_key=settings.ledger_api_key,
            timeout=settings.ledger_service_timeout,
            retries=settings.ledger_connect_retries,
            default_currency=settings.default_currency,
        )

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, token: Optional[str] = None, **kwargs: Any) -> RemoteResult:
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            logger.debug(f"{method} {self.base_url}{path}")
            response = self.client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"Ledger Service timed out after {self.timeout}s on {method} {path}: {e}")
            return RemoteResult(success=False, failure=RemoteFailure.TIMEOUT, error=str(e) or "timeout")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Ledger Service unreachable on {method} {path}: {e}")
            return RemoteResult(success=False, failure=RemoteFailure.UNAVAILABLE, error=str(e) or type(e).__name__)

        if not response.is_success:
            logger.error(f"Ledger Service returned {response.status_code} on {method} {path}: {response.text[:500]}")
            return RemoteResult(
                success=False,
                failure=RemoteFailure.HTTP_ERROR,
                status_code=response.status_code,
                error=response.text[:500],
            )

        try:
            body = response.json() if response.content else None
        except ValueError:
            logger.error(f"Ledger Service sent a non-JSON body on {method} {path}")
            return RemoteResult(
                success=False,
                failure=RemoteFailure.INVALID_RESPONSE,
                status_code=response.status_code,
                error="Response body is not valid JSON",
            )

        if isinstance(body, dict) and body.get("success") is False:
            message = body.get("message") or body.get("error") or "Ledger Service reported failure"
            logger.error(f"Ledger Service refused {method} {path}: {message}")
            return RemoteResult(
                success=False,
                failure=RemoteFailure.REJECTED,
                status_code=response.status_code,
                data=body,
                error=str(message),
            )

        return RemoteResult(success=True, status_code=response.status_code, data=_unwrap(body))

    def approve_transaction(self, transaction_id: str, approver_id: str, token: Optional[str] = None) -> RemoteResult:
        result = self._request(
            "POST",
            f"/transactions/{transaction_id}/approve",
            token=token,
            json={"approved_by": approver_id, "approved_at": utcnow().isoformat()},
        )
        if result.success:
            logger.info(f"Ledger Service approved transaction {transaction_id} (approved_by={approver_id})")
        return result

    def reject_transaction(
        self,
        transaction_id: str,
        rejecter_id: str,
        reason: str,
        token: Optional[str] = None,
    ) -> RemoteResult:
        result = self._request(
            "POST",
            f"/transactions/{transaction_id}/reject",
            token=token,
            json={"rejected_by": rejecter_id, "rejected_at": utcnow().isoformat(), "reason": reason},
        )
        if result.success:
            logger.info(f"Ledger Service rejected transaction {transaction_id} (rejected_by={rejecter_id})")
        return result

    def get_transaction(self, transaction_id: str, token: Optional[str] = None) -> Optional[Transaction]:
        result = self._request("GET", f"/transactions/{transaction_id}", token=token)
        if not result.success or not isinstance(result.data, dict):
            return None
        try:
            return transaction_from_remote(result.data, self.default_currency)
        except ValidationError as e:
            logger.warning(f"Discarding malformed Ledger Service transaction {transaction_id}: {e}")
            return None

    def fetch_transactions(self, filters: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> RemoteResult:
        """Raw transaction records; ``data`` is the remote list on success."""
        return self._request("GET", "/transactions", token=token, params=filters or {})

    def get_transactions(self, filters: Optional[dict[str, Any]] = None, token: Optional[str] = None) -> list[Transaction]:
        result = self.fetch_transactions(filters, token=token)
        if not result.success or not isinstance(result.data, list):
            return []

        transactions = []
        for item in result.data:
            if not isinstance(item, dict):
                continue
            try:
                transactions.append(transaction_from_remote(item, self.default_currency))
            except ValidationError as e:
                logger.warning(f"Skipping malformed Ledger Service transaction {item.get('id')}: {e}")
        return transactions

    def get_user_balance(self, token: str) -> Optional[Decimal]:
        result = self._request("GET", "/user/balance", token=token)
        if not result.success:
            return None
        balance = result.data.get("balance") if isinstance(result.data, dict) else result.data
        if balance is None or isinstance(balance, bool):
            return None
        try:
            return Decimal(str(balance))
        except InvalidOperation:
            logger.warning(f"Ledger Service returned a non-numeric balance: {balance!r}")
            return None

    def login(self, email: str, password: str) -> Optional[dict[str, Any]]:
        result = self._request("POST", "/auth/login", json={"email": email, "password": password})
        if not result.success or not isinstance(result.data, dict):
            return None
        return result.data

    def register(self, email: str, password: str, name: str) -> Optional[dict[str, Any]]:
        result = self._request("POST", "/auth/register", json={"email": email, "password": password, "name": name})
        if not result.success or not isinstance(result.data, dict):
            return None
        return result.data

    def verify_token(self, token: str) -> Optional[dict[str, Any]]:
        result = self._request("GET", "/verify-token", token=token)
        if not result.success or not isinstance(result.data, dict):
            return None
        return result.data

    def logout(self, token: str) -> bool:
        return self._request("POST", "/logout", token=token).success
