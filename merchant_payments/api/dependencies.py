"""
Service container shared by the routes.

Built once per application in ``create_app`` and stored on ``app.state``.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from merchant_payments.config import Settings
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.order_service import OrderService
from merchant_payments.core.reconciliation import ReconciliationEngine
from merchant_payments.integrations.gateway_client import GatewayClient
from merchant_payments.integrations.stream_client import StreamClient
from merchant_payments.integrations.webhook_handler import WebhookHandler
from merchant_payments.monitoring.health import HealthCheck
from merchant_payments.workers.status_poller import StatusPoller


@dataclass
class Services:
    settings: Settings
    ledger: PaymentLedger
    engine: ReconciliationEngine
    gateway: GatewayClient
    orders: OrderService
    webhooks: WebhookHandler
    health: HealthCheck
    stream: Optional[StreamClient] = None
    poller: Optional[StatusPoller] = None


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the application's services."""
    return request.app.state.services
