"""
API routes for the merchant payment service.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from merchant_payments.core.models import OrderStatus
from merchant_payments.core.order_service import OrderValidationError
from merchant_payments.integrations.gateway_client import GatewayError
from merchant_payments.integrations.webhook_handler import (
    WebhookAuthenticationError,
    WebhookPayloadError,
)

from .dependencies import Services, get_services
from .schemas import (
    ApiResponse,
    CheckoutUrlRequest,
    CreateInvoiceRequest,
    HealthCheckResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/api/payments", tags=["payments"])
user_router = APIRouter(prefix="/api/users", tags=["users"])
invoice_router = APIRouter(prefix="/api/invoices", tags=["invoices"])
webhook_router = APIRouter(prefix="/webhook", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def _gateway_http_error(e: GatewayError) -> HTTPException:
    """Pass gateway client errors through, report everything else as 502."""
    if e.status_code is not None and 400 <= e.status_code < 500:
        return HTTPException(status_code=e.status_code, detail=str(e))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------


@payment_router.post(
    "/create-invoice",
    response_model=ApiResponse,
    summary="Create a payment invoice",
    description="Create a gateway invoice and a pending merchant order",
)
@payment_router.post("/create", response_model=ApiResponse, include_in_schema=False)
async def create_invoice(
    request: CreateInvoiceRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Create an invoice; the response feeds the payment modal."""
    logger.info(
        "api_create_invoice_request",
        user_id=request.user_id,
        amount=str(request.amount) if request.amount is not None else None,
        currency=request.currency,
        network=request.network,
    )
    try:
        data = await services.orders.create_invoice_order(
            user_id=request.user_id,
            amount=request.amount,
            currency=request.currency,
            network=request.network,
            description=request.description,
        )
    except OrderValidationError as e:
        logger.warning("api_create_invoice_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except GatewayError as e:
        logger.error("api_create_invoice_gateway_error", error=str(e), status_code=e.status_code)
        raise _gateway_http_error(e)

    return {"success": True, "data": data}


@payment_router.get(
    "/{payment_ref}/status",
    response_model=ApiResponse,
    summary="Get payment status",
    description="Refresh an order from the gateway and return the ledger view",
)
async def get_payment_status(
    payment_ref: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Look up by invoice id or order id."""
    transactions: list = []
    try:
        refresh = await services.orders.refresh_status(payment_ref)
    except GatewayError as e:
        # The ledger still answers; the poll just did not happen
        logger.warning("api_status_refresh_failed", ref=payment_ref, error=str(e))
        order = services.ledger.get_order(payment_ref)
    else:
        order = refresh.order if refresh else None
        if refresh:
            transactions = refresh.transactions

    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")

    snapshot = order.to_dict()
    return {
        "success": True,
        "data": {
            "id": order.invoice_id,
            "order_id": order.order_id,
            "status": snapshot["status"],
            "amount": snapshot["amount"],
            "amount_received": snapshot["amount_received"],
            "usd_amount": snapshot["usd_amount"],
            "credited_amount": snapshot["credited_amount"],
            "currency": order.currency,
            "network": order.network,
            "address": order.address,
            "transactions": transactions,
        },
    }


@payment_router.post(
    "/checkout-url",
    response_model=ApiResponse,
    summary="Create hosted checkout URL",
    description="Seed a pending order and return a signed redirect URL",
)
async def create_checkout_url(
    request: CheckoutUrlRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Fiat to crypto conversion happens on the gateway's checkout page."""
    try:
        data = services.orders.create_checkout_order(
            user_id=request.user_id,
            fiat_amount=request.fiat_amount,
            fiat_currency=request.fiat_currency,
            currency=request.currency,
            network=request.network,
            description=request.description,
        )
    except (OrderValidationError, ValueError) as e:
        logger.warning("api_checkout_url_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {"success": True, "data": data}


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


@user_router.get(
    "/{user_id}/balance",
    response_model=ApiResponse,
    summary="Get user balance",
    description="Cumulative confirmed USD credited to a user",
)
async def get_user_balance(
    user_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    balance = services.ledger.get_user_balance(user_id)
    confirmed = services.ledger.list_orders(user_id=user_id, status=OrderStatus.CONFIRMED)
    return {
        "success": True,
        "data": {
            "user_id": user_id,
            "balance": float(balance),
            "currency": "USD",
            "total_payments": len(confirmed),
            "source": "ledger",
        },
    }


@user_router.get(
    "/{user_id}/payments",
    response_model=ApiResponse,
    summary="Get user payments",
    description="Payment history of a user, newest first",
)
async def get_user_payments(
    user_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    orders = services.ledger.list_orders(user_id=user_id)
    return {
        "success": True,
        "data": {
            "user_id": user_id,
            "payments": [order.to_dict() for order in orders],
            "source": "ledger",
        },
    }


# ----------------------------------------------------------------------
# Invoices (gateway data)
# ----------------------------------------------------------------------


@invoice_router.get(
    "",
    summary="List invoices",
    description=(
        "Proxy to the gateway invoice list. Filters: status, network, currency, "
        "user_id, user_ids, date_from, date_to, limit, offset"
    ),
)
async def list_invoices(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    params = dict(request.query_params)
    logger.info("api_list_invoices", params=params)
    try:
        return await services.gateway.get_invoices(params)
    except GatewayError as e:
        logger.error("api_list_invoices_error", error=str(e))
        raise _gateway_http_error(e)


@invoice_router.get("/stats", response_model=ApiResponse, summary="Invoice statistics")
async def invoice_stats(
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        stats = await services.gateway.get_invoice_stats(dict(request.query_params))
    except GatewayError as e:
        logger.error("api_invoice_stats_error", error=str(e))
        raise _gateway_http_error(e)
    return {"success": True, "data": stats}


@invoice_router.get("/{invoice_id}", summary="Get invoice")
async def get_invoice(
    invoice_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    try:
        return await services.gateway.get_invoice(invoice_id)
    except GatewayError as e:
        logger.error("api_get_invoice_error", invoice_id=invoice_id, error=str(e))
        raise _gateway_http_error(e)


@invoice_router.post("/{invoice_id}/cancel", summary="Cancel invoice")
async def cancel_invoice(
    invoice_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Cancel at the gateway, then mark the local order cancelled."""
    try:
        return await services.orders.cancel_order(invoice_id)
    except GatewayError as e:
        logger.error("api_cancel_invoice_error", invoice_id=invoice_id, error=str(e))
        raise _gateway_http_error(e)


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


@webhook_router.post(
    "/payment",
    response_model=WebhookResponse,
    summary="Payment gateway webhook",
    description="Receive signed payment notifications from the gateway",
)
async def payment_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="X-Signature"),
    x_webhook_event: Optional[str] = Header(None, alias="X-Webhook-Event"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle a gateway webhook.

    The signature is checked against the raw body bytes.
    """
    body = await request.body()
    try:
        return await services.webhooks.handle(body, x_signature, x_webhook_event)
    except WebhookAuthenticationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except WebhookPayloadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
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
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
