import hmac
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .approvals import ApprovalOrchestrator
from .config import Settings, get_settings
from .dependencies import (
    close_ledger_client,
    get_ingestor,
    get_orchestrator,
    get_request_context,
    get_store,
    get_synchronizer,
)
from .errors import (
    ErrorKind,
    InvalidStateTransitionError,
    MalformedPayloadError,
    SignatureInvalidError,
    TransactionNotFoundError,
    TransactionServiceError,
)
from .logging_config import configure_logging
from .models import (
    ApprovalResult,
    AuditRecord,
    BulkApproveRequest,
    BulkRejectRequest,
    BulkResult,
    PaymentCallback,
    RejectRequest,
    RequestContext,
    SyncResult,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookReceipt,
    utcnow,
)
from .storage import TransactionStore
from .sync import TransactionSynchronizer
from .webhooks import WebhookIngestor

configure_logging(get_settings().log_level)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ErrorKind.MALFORMED_PAYLOAD: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SIGNATURE_INVALID: status.HTTP_400_BAD_REQUEST,
    ErrorKind.TRANSACTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.INVALID_STATE_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_REASON: 422,
    ErrorKind.REMOTE_APPROVAL_FAILED: status.HTTP_502_BAD_GATEWAY,
    ErrorKind.REMOTE_TIMEOUT: status.HTTP_504_GATEWAY_TIMEOUT,
    ErrorKind.LOCAL_SYNC_FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.STORAGE_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Shutting down; closing Ledger Service client")
    close_ledger_client()


app = FastAPI(
    title="Transaction Reconciliation API",
    description="Transaction lifecycle, payment gateway webhooks and Ledger Service approval reconciliation",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _http_error(error: TransactionServiceError) -> HTTPException:
    return HTTPException(
        status_code=ERROR_STATUS_CODES.get(error.kind, status.HTTP_400_BAD_REQUEST),
        detail={"error_kind": error.kind.value, "message": str(error)},
    )


def _webhook_rejection(message: str, errors: Optional[list] = None) -> JSONResponse:
    content = {"success": False, "message": message}
    if errors:
        content["errors"] = errors
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


@app.get("/health", tags=["System"])
def health_check(settings: Settings = Depends(get_settings)):
    return {"status": "healthy", "service": settings.service_name}


@app.get("/webhooks/health", tags=["Webhooks"])
def webhook_health_check(settings: Settings = Depends(get_settings)):
    return {"status": "healthy", "timestamp": utcnow().isoformat(), "version": settings.version}


@app.post("/webhooks/gateway/notification", tags=["Webhooks"])
async def gateway_notification(request: Request, ingestor: WebhookIngestor = Depends(get_ingestor)):
    try:
        payload = await request.json()
    except ValueError:
        return _webhook_rejection("Invalid payload format")

    try:
        receipt: WebhookReceipt = await run_in_threadpool(ingestor.ingest, payload)
    except MalformedPayloadError as e:
        return _webhook_rejection("Invalid payload format", e.errors)
    except SignatureInvalidError:
        return _webhook_rejection("Invalid signature")

    return {
        "success": True,
        "message": receipt.message,
        "data": {
            "order_id": receipt.callback.transaction_id,
            "status": receipt.callback.mapped_status.value,
            "callback_id": str(receipt.callback.id),
            "processed": receipt.processed,
        },
    }


@app.post("/webhooks/ledger/notification", tags=["Webhooks"])
async def ledger_notification(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    ingestor: WebhookIngestor = Depends(get_ingestor),
    settings: Settings = Depends(get_settings),
):
    expected = settings.ledger_api_key.encode("utf-8")
    provided = (x_api_key or "").encode("utf-8")
    if not expected or not hmac.compare_digest(expected, provided):
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"success": False, "message": "Unauthorized"})

    try:
        payload = await request.json()
    except ValueError:
        return _webhook_rejection("Invalid payload format")

    try:
        outcome = await run_in_threadpool(ingestor.ingest_ledger_notification, payload)
    except MalformedPayloadError as e:
        return _webhook_rejection("Invalid payload format", e.errors)
    except TransactionNotFoundError:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"success": False, "message": "Transaction not found"})
    except InvalidStateTransitionError as e:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"success": False, "message": str(e)})

    return {
        "success": True,
        "message": "Webhook processed successfully" if outcome.changed else "Status already applied",
        "data": {
            "transaction_id": outcome.transaction.transaction_id,
            "status": outcome.transaction.status.value,
        },
    }


@app.get("/admin/transactions", response_model=list[Transaction], tags=["Transactions"])
def list_transactions(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    type_filter: Optional[TransactionType] = Query(None, alias="type"),
    context: RequestContext = Depends(get_request_context),
    store: TransactionStore = Depends(get_store),
) -> list[Transaction]:
    return store.list_transactions(status=status_filter, type=type_filter)


@app.post("/admin/transactions/sync", response_model=SyncResult, tags=["Transactions"])
def sync_transactions(
    status_filter: Optional[str] = Query(None, alias="status"),
    type_filter: Optional[str] = Query(None, alias="type"),
    context: RequestContext = Depends(get_request_context),
    synchronizer: TransactionSynchronizer = Depends(get_synchronizer),
) -> SyncResult:
    filters = {k: v for k, v in (("status", status_filter), ("type", type_filter)) if v}
    try:
        return synchronizer.sync(context, filters or None)
    except TransactionServiceError as e:
        raise _http_error(e)


@app.get("/admin/transactions/{transaction_id}", response_model=Transaction, tags=["Transactions"])
def get_transaction(
    transaction_id: str,
    context: RequestContext = Depends(get_request_context),
    store: TransactionStore = Depends(get_store),
) -> Transaction:
    transaction = store.get_transaction(transaction_id)
    if transaction is None:
        raise _http_error(TransactionNotFoundError(f"Transaction {transaction_id} not found"))
    return transaction


@app.get("/admin/transactions/{transaction_id}/callbacks", response_model=list[PaymentCallback], tags=["Transactions"])
def get_transaction_callbacks(
    transaction_id: str,
    context: RequestContext = Depends(get_request_context),
    store: TransactionStore = Depends(get_store),
) -> list[PaymentCallback]:
    return store.callbacks_for(transaction_id)


@app.post("/admin/transactions/bulk-approve", response_model=BulkResult, tags=["Transactions"])
def bulk_approve(
    request: BulkApproveRequest,
    context: RequestContext = Depends(get_request_context),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
) -> BulkResult:
    return orchestrator.bulk_approve(request.transaction_ids, context)


@app.post("/admin/transactions/bulk-reject", response_model=BulkResult, tags=["Transactions"])
def bulk_reject(
    request: BulkRejectRequest,
    context: RequestContext = Depends(get_request_context),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
) -> BulkResult:
    try:
        return orchestrator.bulk_reject(request.transaction_ids, context, request.reason)
    except TransactionServiceError as e:
        raise _http_error(e)


@app.post("/admin/transactions/{transaction_id}/approve", response_model=ApprovalResult, tags=["Transactions"])
def approve_transaction(
    transaction_id: str,
    context: RequestContext = Depends(get_request_context),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
) -> ApprovalResult:
    try:
        return orchestrator.approve(transaction_id, context)
    except TransactionServiceError as e:
        raise _http_error(e)


@app.post("/admin/transactions/{transaction_id}/reject", response_model=ApprovalResult, tags=["Transactions"])
def reject_transaction(
    transaction_id: str,
    request: RejectRequest,
    context: RequestContext = Depends(get_request_context),
    orchestrator: ApprovalOrchestrator = Depends(get_orchestrator),
) -> ApprovalResult:
    try:
        return orchestrator.reject(transaction_id, context, request.reason)
    except TransactionServiceError as e:
        raise _http_error(e)


@app.get("/admin/callbacks/unprocessed", response_model=list[PaymentCallback], tags=["Callbacks"])
def list_unprocessed_callbacks(
    context: RequestContext = Depends(get_request_context),
    store: TransactionStore = Depends(get_store),
) -> list[PaymentCallback]:
    return store.unprocessed_callbacks()


@app.post("/admin/callbacks/reconcile", response_model=list[WebhookReceipt], tags=["Callbacks"])
def reconcile_callbacks(
    context: RequestContext = Depends(get_request_context),
    ingestor: WebhookIngestor = Depends(get_ingestor),
) -> list[WebhookReceipt]:
    return ingestor.reconcile_unprocessed()


@app.get("/admin/audit", response_model=list[AuditRecord], tags=["Audit"])
def list_audit_records(
    actor_id: Optional[str] = None,
    action: Optional[str] = None,
    context: RequestContext = Depends(get_request_context),
    store: TransactionStore = Depends(get_store),
) -> list[AuditRecord]:
    return store.audit_records(actor_id=actor_id, action=action)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
