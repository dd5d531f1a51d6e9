"""
Main FastAPI application.

Merchant payment API with:
- Gateway invoice creation and hosted checkout
- Webhook ingestion with signature verification
- Real-time notification stream and status polling
- Request ID tracking and structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from merchant_payments import __version__
from merchant_payments.config import Settings, get_settings
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.order_service import OrderService
from merchant_payments.core.reconciliation import (
    ReconciliationEngine,
    usd_amount_only,
    usd_or_received_amount,
)
from merchant_payments.integrations.gateway_client import GatewayClient
from merchant_payments.integrations.stream_client import Connector, StreamClient
from merchant_payments.integrations.webhook_handler import WebhookHandler
from merchant_payments.monitoring.health import HealthCheck
from merchant_payments.monitoring.logging import (
    bind_request_context,
    clear_request_context,
    setup_logging,
)
from merchant_payments.workers.status_poller import StatusPoller

from .dependencies import Services
from .routes import (
    invoice_router,
    monitoring_router,
    payment_router,
    user_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


def build_services(
    settings: Settings,
    gateway: Optional[GatewayClient] = None,
    connector: Optional[Connector] = None,
) -> Services:
    """Wire ledger, engine and channels together."""
    ledger = PaymentLedger()
    credit_policy = (
        usd_or_received_amount
        if settings.credit_fallback_to_received_amount
        else usd_amount_only
    )
    engine = ReconciliationEngine(ledger, credit_policy=credit_policy)
    gateway = gateway or GatewayClient(settings)
    orders = OrderService(ledger, engine, gateway, settings)

    stream = None
    if settings.stream_enabled:
        stream = StreamClient.from_settings(settings, engine.apply, connector=connector)

    poller = None
    if settings.status_poll_interval > 0:
        poller = StatusPoller(
            orders,
            interval_seconds=settings.status_poll_interval,
            min_age_seconds=settings.status_poll_min_age,
        )

    return Services(
        settings=settings,
        ledger=ledger,
        engine=engine,
        gateway=gateway,
        orders=orders,
        webhooks=WebhookHandler(engine, settings.payment_gateway_webhook_secret),
        health=HealthCheck(settings, ledger, gateway, stream),
        stream=stream,
        poller=poller,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Starts the notification stream and status poller, stops both on shutdown.
    """
    services: Services = app.state.services
    settings = services.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        gateway_url=settings.payment_gateway_url,
        api_key_configured=bool(settings.payment_gateway_api_key),
        site_key_configured=bool(settings.payment_gateway_site_key),
        stream_enabled=services.stream is not None,
    )

    if services.stream is not None:
        await services.stream.connect()

    poller_task = None
    if services.poller is not None:
        poller_task = asyncio.create_task(services.poller.start(), name="status-poller")

    yield

    logger.info("application_shutdown")
    if poller_task is not None:
        services.poller.stop()
        poller_task.cancel()
        await asyncio.gather(poller_task, return_exceptions=True)

    if services.stream is not None:
        await services.stream.disconnect()

    try:
        await services.gateway.close()
    except Exception as e:
        logger.error("gateway_shutdown_error", error=str(e))


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[GatewayClient] = None,
    connector: Optional[Connector] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to get_settings())
        gateway: Gateway client override (for tests)
        connector: Websocket connector override (for tests)
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Merchant Payments",
        description=(
            "Merchant-side crypto payment service. Creates gateway invoices and "
            "reconciles webhook, stream and polled notifications into user balances."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = build_services(settings, gateway=gateway, connector=connector)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add request ID, timing and logging context to every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()

        bind_request_context(request_id, request.method, request.url.path)
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise
        finally:
            clear_request_context()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "error": "Internal server error",
            },
        )

    app.include_router(payment_router)
    app.include_router(user_router)
    app.include_router(invoice_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "merchant_payments.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
