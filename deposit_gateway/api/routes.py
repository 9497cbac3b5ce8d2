"""
API routes for deposits, processor callbacks and monitoring.
"""
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import RedirectResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from deposit_gateway.core.deposits import DepositService
from deposit_gateway.core.exceptions import ProcessorError, ProcessorUnavailable
from deposit_gateway.database.connection import get_db
from deposit_gateway.database.models import Transaction, TransactionStatus
from deposit_gateway.integrations.webhook_handler import (
    SIGNATURE_HEADER,
    FedaPayWebhookHandler,
)
from deposit_gateway.monitoring.health import HealthCheck

from .schemas import (
    CreateDepositRequest,
    DepositResponse,
    ErrorResponse,
    HealthCheckResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
    TransactionEnvelope,
    TransactionListResponse,
    UserStatsResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
deposit_router = APIRouter(prefix="/deposits", tags=["deposits"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (400, 404, 502, 503)
}


def get_deposit_service(request: Request) -> DepositService:
    """Deposit service built at startup (see ``lifespan``)."""
    return request.app.state.deposit_service


def get_webhook_handler(
    service: DepositService = Depends(get_deposit_service),
) -> FedaPayWebhookHandler:
    return FedaPayWebhookHandler(service.settings, service)


def get_health_check(request: Request) -> HealthCheck:
    return HealthCheck(getattr(request.app.state, "processor", None))


def result_redirect_url(client_url: str, transaction: Optional[Transaction] = None, **params: Any) -> str:
    """
    Build the front-end result page URL for a callback.

    Without a transaction, ``params`` (e.g. ``error=missing_id``) go to the
    failure page.
    """
    base = client_url.rstrip("/")
    if transaction is None:
        return f"{base}/payment-failed?{urlencode(params)}"

    if transaction.status == TransactionStatus.COMPLETED.value:
        query = {"transaction_id": transaction.id, "amount": transaction.amount}
        return f"{base}/payment-success?{urlencode(query)}"
    if transaction.is_terminal:
        query = {"transaction_id": transaction.id, "reason": transaction.status}
        return f"{base}/payment-failed?{urlencode(query)}"
    return f"{base}/payment-pending?{urlencode({'transaction_id': transaction.id})}"


def _deposit_response(outcome: Any) -> DepositResponse:
    transaction = outcome.transaction
    return DepositResponse(
        message=outcome.message,
        transaction_id=transaction.id,
        external_id=transaction.external_id,
        amount=transaction.amount,
        currency=transaction.currency,
        status=transaction.status,
        payment_url=outcome.payment_url,
        new_balance=outcome.new_balance,
    )


@deposit_router.post(
    "/create/manual",
    response_model=DepositResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
    summary="Create a manual deposit",
    description="Same as POST /deposits/create",
)
@deposit_router.post(
    "/create",
    response_model=DepositResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
    summary="Create a deposit",
    description="Create a pending deposit and return the hosted payment page URL",
)
async def create_deposit(
    request: CreateDepositRequest,
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> DepositResponse:
    """Manual deposit: the customer pays on FedaPay's hosted page."""
    logger.info("api_create_deposit_request", user_id=request.user_id, amount=request.amount)
    outcome = await service.create_deposit(
        db,
        amount=request.amount,
        user_id=request.user_id,
        customer=request.customer.model_dump(),
        description=request.description,
    )
    return _deposit_response(outcome)


@deposit_router.post(
    "/create/automatic",
    response_model=DepositResponse,
    response_model_exclude_none=True,
    responses=ERROR_RESPONSES,
    summary="Create an automatic deposit",
    description="Push a mobile-money prompt and wait briefly for settlement",
)
async def create_automatic_deposit(
    request: CreateDepositRequest,
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> DepositResponse:
    """
    Automatic deposit.

    Returns whatever state settlement polling reached; a deposit still
    pending is finished later by the webhook or callback.
    """
    logger.info("api_create_automatic_deposit_request", user_id=request.user_id, amount=request.amount)
    outcome = await service.create_deposit(
        db,
        amount=request.amount,
        user_id=request.user_id,
        customer=request.customer.model_dump(),
        description=request.description,
        automatic=True,
    )
    return _deposit_response(outcome)


@deposit_router.get(
    "/user/{user_id}",
    response_model=TransactionListResponse,
    summary="List a user's deposits",
)
async def list_user_deposits(
    user_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> Dict[str, Any]:
    """Newest first, optionally filtered by status."""
    transactions = await service.list_user_transactions(
        db, user_id, limit=limit, status=status_filter
    )
    return {"success": True, "count": len(transactions), "data": [t.to_dict() for t in transactions]}


@deposit_router.get(
    "/user/{user_id}/stats",
    response_model=UserStatsResponse,
    summary="Deposit statistics for a user",
)
async def user_deposit_stats(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> Dict[str, Any]:
    return {"success": True, "data": await service.user_stats(db, user_id)}


@deposit_router.get(
    "/{transaction_id}",
    response_model=TransactionEnvelope,
    responses={404: {"model": ErrorResponse}},
    summary="Get a deposit",
)
async def get_deposit(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> Dict[str, Any]:
    transaction = await service.get_transaction(db, transaction_id)
    return {"success": True, "data": transaction.to_dict()}


@deposit_router.put(
    "/{transaction_id}/status",
    response_model=StatusUpdateResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Override a deposit status",
    description="Administrative transition; final deposits are left unchanged",
)
async def update_deposit_status(
    transaction_id: str,
    request: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> Dict[str, Any]:
    logger.info("api_update_deposit_status", transaction_id=transaction_id, status=request.status)
    result = await service.transition(
        db, transaction_id, request.status, message=request.message, source="admin"
    )
    return {"success": True, "applied": result.applied, "data": result.transaction.to_dict()}


@deposit_router.post(
    "/{transaction_id}/refresh",
    response_model=TransactionEnvelope,
    responses=ERROR_RESPONSES,
    summary="Refresh a deposit from FedaPay",
)
async def refresh_deposit(
    transaction_id: str,
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> Dict[str, Any]:
    transaction = await service.refresh_status(db, transaction_id, source="poll")
    return {"success": True, "data": transaction.to_dict()}


@payment_router.get(
    "/callback",
    response_class=RedirectResponse,
    status_code=status.HTTP_302_FOUND,
    summary="FedaPay redirect callback",
    description="Reconcile the deposit and redirect the customer to the result page",
)
async def payment_callback(
    id: Optional[str] = Query(default=None, description="FedaPay transaction ID"),
    observed_status: Optional[str] = Query(default=None, alias="status"),
    db: AsyncSession = Depends(get_db),
    service: DepositService = Depends(get_deposit_service),
) -> RedirectResponse:
    """
    Redirect callback.

    The query ``status`` comes from the customer's browser and is not
    trusted; the status fetched from FedaPay is applied instead.
    """
    client_url = service.settings.client_url

    def redirect(url: str) -> RedirectResponse:
        return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

    if not id:
        logger.warning("callback_missing_id")
        return redirect(result_redirect_url(client_url, error="missing_id"))

    try:
        remote = await service.processor.fetch_remote_status(id)
        if observed_status and observed_status.strip().lower() != remote.status:
            logger.warning(
                "callback_status_mismatch",
                external_id=id,
                query_status=observed_status,
                remote_status=remote.status,
            )
        transaction = await service.reconcile(db, id, remote.status, source="callback")
    except ProcessorUnavailable:
        logger.warning("callback_processor_unavailable", external_id=id)
        local = await service.find_by_external_id(db, id)
        if local is None:
            return redirect(result_redirect_url(client_url, error="transaction_not_found"))
        return redirect(result_redirect_url(client_url, local))
    except ProcessorError as e:
        logger.warning("callback_remote_lookup_failed", external_id=id, error=e.detail)
        return redirect(result_redirect_url(client_url, error="transaction_not_found"))
    except Exception as e:
        logger.error("callback_processing_error", external_id=id, error=str(e), exc_info=True)
        return redirect(result_redirect_url(client_url, error="callback_processing_error"))

    if transaction is None:
        return redirect(result_redirect_url(client_url, error="transaction_not_found"))

    logger.info(
        "callback_processed",
        external_id=id,
        transaction_id=transaction.id,
        status=transaction.status,
    )
    return redirect(result_redirect_url(client_url, transaction))


@payment_router.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={401: {"model": ErrorResponse}},
    summary="FedaPay webhook endpoint",
    description="Handle signed FedaPay transaction events",
)
async def fedapay_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
    handler: FedaPayWebhookHandler = Depends(get_webhook_handler),
) -> Dict[str, Any]:
    """Verify the signature over the raw body, then reconcile."""
    body = await request.body()
    return await handler.handle(body, signature, db)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "ready":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
