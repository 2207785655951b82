"""Dependency injection for the transaction reconciliation API."""

from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from .approvals import ApprovalOrchestrator
from .config import Settings, get_settings
from .ledger_client import LedgerServiceClient
from .models import RequestContext
from .signature import SignatureVerifier
from .storage import TransactionStore
from .sync import TransactionSynchronizer
from .webhooks import WebhookIngestor


@lru_cache()
def get_store() -> TransactionStore:
    return TransactionStore()


@lru_cache()
def get_ledger_client() -> LedgerServiceClient:
    return LedgerServiceClient.from_settings(get_settings())


def close_ledger_client() -> None:
    if get_ledger_client.cache_info().currsize:
        get_ledger_client().close()
        get_ledger_client.cache_clear()


def get_ingestor(
    store: TransactionStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
) -> WebhookIngestor:
    return WebhookIngestor(store, SignatureVerifier(settings.gateway_server_key))


def get_orchestrator(
    store: TransactionStore = Depends(get_store),
    ledger_client: LedgerServiceClient = Depends(get_ledger_client),
) -> ApprovalOrchestrator:
    return ApprovalOrchestrator(store, ledger_client)


def get_synchronizer(
    store: TransactionStore = Depends(get_store),
    ledger_client: LedgerServiceClient = Depends(get_ledger_client),
    ingestor: WebhookIngestor = Depends(get_ingestor),
    settings: Settings = Depends(get_settings),
) -> TransactionSynchronizer:
    return TransactionSynchronizer(store, ledger_client, ingestor, default_currency=settings.default_currency)


def get_request_context(
    request: Request,
    x_actor_id: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None),
) -> RequestContext:
    """
    Build the acting administrator's context from request headers.

    ``X-Actor-Id`` identifies the administrator; an ``Authorization: Bearer``
    token, when present, is forwarded to the Ledger Service.
    """
    if not x_actor_id or not x_actor_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Actor-Id header required")

    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization.split(" ", 1)[1].strip() or None

    return RequestContext(
        actor_id=x_actor_id.strip(),
        token=token,
        ip_address=request.client.host if request.client else None,
        user_agent=user_agent,
    )
