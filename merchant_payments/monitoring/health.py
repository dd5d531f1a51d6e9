"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Ledger availability and order counts
- Notification stream connection state
- Payment gateway reachability
"""
from typing import Any, Dict, Optional

import structlog

from merchant_payments.config import Settings

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for the reconciliation service's dependencies.

    The stream is reported but never makes the service unready: webhooks
    and polling keep orders moving while it reconnects.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: Any,
        gateway: Any,
        stream: Optional[Any] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            settings: Application settings
            ledger: PaymentLedger instance
            gateway: GatewayClient instance
            stream: StreamClient instance, None when the stream is disabled
        """
        self.settings = settings
        self.ledger = ledger
        self.gateway = gateway
        self.stream = stream

    async def check_ledger(self) -> Dict[str, Any]:
        """
        Check ledger state.

        Raises:
            HealthCheckError: If the ledger cannot be read
        """
        try:
            return {
                "status": "healthy",
                "service": "ledger",
                **self.ledger.stats(),
            }
        except Exception as e:
            logger.error("ledger_health_check_failed", error=str(e))
            raise HealthCheckError(f"Ledger health check failed: {str(e)}")

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check payment gateway reachability.

        Raises:
            HealthCheckError: If the gateway is unreachable or erroring
        """
        if not await self.gateway.ping():
            logger.error("gateway_health_check_failed", base_url=self.settings.payment_gateway_url)
            raise HealthCheckError("Payment gateway unreachable")
        return {
            "status": "healthy",
            "service": "gateway",
            "message": "Payment gateway reachable",
            "base_url": self.settings.payment_gateway_url,
        }

    def check_stream(self) -> Dict[str, Any]:
        """Report the notification stream state."""
        if self.stream is None:
            return {"status": "disabled", "service": "stream"}
        info = self.stream.status()
        return {
            "status": "healthy" if self.stream.is_connected else "degraded",
            "service": "stream",
            **info,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("ledger", self.check_ledger), ("gateway", self.check_gateway)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        checks["stream"] = self.check_stream()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "environment": self.settings.app_env,
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe; does not touch external dependencies."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; verifies dependencies are available."""
        return await self.check_all()
