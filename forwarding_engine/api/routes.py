"""
API routes for pending payments, settlement webhooks and operations.
"""
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from forwarding_engine.core.errors import (
    CancellationRejectedError,
    DuplicatePaymentError,
    PaymentNotFoundError,
    PaymentStoreError,
    PaymentValidationError,
)
from forwarding_engine.core.services import ForwardingServices
from forwarding_engine.integrations.ledger import LedgerError, UpstreamUnavailable
from forwarding_engine.integrations.webhook_handler import WebhookError

from .schemas import (
    CancelPaymentRequest,
    CreatePaymentRequest,
    HealthCheckResponse,
    PaymentEventResponse,
    PaymentResponse,
    RedriveResponse,
    StatsResponse,
    SweepResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_services(request: Request) -> ForwardingServices:
    """Services built by the application lifespan."""
    return request.app.state.services


@payment_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a pending payment",
    description="Issue an invoice for base + tip and start listening for its settlement",
)
async def create_payment(request: Request, body: CreatePaymentRequest) -> PaymentResponse:
    """
    Create a pending payment.

    Returns the invoice to show the payer and the frozen split.
    """
    services = get_services(request)
    try:
        record = await services.payments.create_pending_payment(
            merchant_account_ref=body.merchant_account_ref,
            base_amount=body.base_amount,
            tip_amount=body.tip_amount,
            tip_percent=body.tip_percent,
            tip_recipients=[
                (recipient.destination, recipient.share_percent)
                for recipient in body.tip_recipients
            ],
            display_currency=body.display_currency,
            memo=body.memo,
            metadata=body.metadata,
        )

        logger.info(
            "api_payment_created",
            payment_hash=record.payment_hash,
            total_amount=record.total_amount,
        )
        return PaymentResponse.from_snapshot(record)

    except PaymentValidationError as e:
        logger.warning("api_payment_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except UpstreamUnavailable as e:
        logger.error("api_ledger_unavailable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Ledger temporarily unavailable",
        )

    except LedgerError as e:
        logger.error("api_ledger_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    except DuplicatePaymentError as e:
        logger.error("api_duplicate_payment", error=str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    except PaymentStoreError as e:
        logger.error("api_payment_store_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment could not be stored",
        )


@payment_router.get(
    "/{payment_hash}",
    response_model=PaymentResponse,
    summary="Get payment status",
)
async def get_payment_status(request: Request, payment_hash: str) -> PaymentResponse:
    """Get payment record by payment hash."""
    try:
        record = await get_services(request).payments.get_payment_status(payment_hash)
        return PaymentResponse.from_snapshot(record)
    except PaymentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentStoreError as e:
        logger.error("api_get_payment_error", error=str(e), payment_hash=payment_hash)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve payment",
        )


@payment_router.get(
    "/{payment_hash}/events",
    response_model=List[PaymentEventResponse],
    summary="Get payment audit trail",
)
async def list_payment_events(request: Request, payment_hash: str) -> List[PaymentEventResponse]:
    """Audit events for a payment in order."""
    try:
        events = await get_services(request).payments.list_events(payment_hash)
        return [PaymentEventResponse.from_snapshot(event) for event in events]
    except PaymentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentStoreError as e:
        logger.error("api_list_events_error", error=str(e), payment_hash=payment_hash)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve events",
        )


@payment_router.post(
    "/{payment_hash}/cancel",
    response_model=PaymentResponse,
    summary="Cancel a pending payment",
)
async def cancel_payment(
    request: Request,
    payment_hash: str,
    body: Optional[CancelPaymentRequest] = None,
) -> PaymentResponse:
    """Cancel an unpaid invoice."""
    try:
        record = await get_services(request).payments.cancel_payment(
            payment_hash, reason=body.reason if body else None
        )
        logger.info("api_payment_cancelled", payment_hash=payment_hash)
        return PaymentResponse.from_snapshot(record)
    except PaymentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except CancellationRejectedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PaymentStoreError as e:
        logger.error("api_cancel_payment_error", error=str(e), payment_hash=payment_hash)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel payment",
        )


@webhook_router.post(
    "/ledger",
    response_model=WebhookResponse,
    summary="Ledger webhook endpoint",
    description="Handle signed settlement webhooks from the ledger",
)
async def ledger_webhook(request: Request) -> Dict[str, Any]:
    """
    Handle ledger webhook deliveries.

    Verifies the signature and hands receive events to the settlement listener.
    """
    handler = get_services(request).webhooks
    try:
        body = await request.body()
        event = handler.verify_signature(body, request.headers)

        logger.info(
            "api_webhook_received",
            event_id=event["id"],
            event_type=event.get("eventType"),
        )

        return await handler.process_event(event)

    except WebhookError as e:
        logger.error("api_webhook_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except Exception as e:
        logger.error("api_webhook_unexpected_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


@admin_router.post(
    "/payments/{payment_hash}/redrive",
    response_model=RedriveResponse,
    summary="Re-drive a settled payment",
    description="Push a payment known to be paid through forwarding; the claim arbitrates",
)
async def redrive_payment(request: Request, payment_hash: str) -> RedriveResponse:
    """Manually forward a settled payment."""
    try:
        outcome = await get_services(request).payments.redrive(payment_hash)
        logger.info(
            "api_payment_redriven",
            payment_hash=payment_hash,
            claimed=outcome.claimed,
        )
        return RedriveResponse.from_outcome(outcome)
    except PaymentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except PaymentStoreError as e:
        logger.error("api_redrive_error", error=str(e), payment_hash=payment_hash)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Re-drive failed",
        )


@admin_router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Run the expiry sweeper",
)
async def run_sweep(request: Request) -> Dict[str, Any]:
    """Expire stale invoices and report unresolved payments now."""
    try:
        report = await get_services(request).sweeper.run_once()
        return report.to_dict()
    except PaymentStoreError as e:
        logger.error("api_sweep_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Sweep failed: {str(e)}",
        )


@admin_router.get(
    "/stats",
    response_model=StatsResponse,
    summary="Payment statistics",
)
async def get_stats(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 90, description="Lookback window in hours"),
) -> Dict[str, Any]:
    """Counts by status plus forwarded and tip volume."""
    try:
        return await get_services(request).payments.get_stats(hours=hours)
    except PaymentStoreError as e:
        logger.error("api_stats_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to compute statistics",
        )


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(request: Request) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await get_services(request).health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(request: Request) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await get_services(request).health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(request: Request) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    try:
        result = await get_services(request).health.readiness()
        if result["status"] == "unhealthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
