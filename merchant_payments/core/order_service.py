"""
Order creation and gateway-driven status changes.

Creates merchant orders (direct invoices and hosted checkouts) and feeds
gateway answers back through the reconciliation engine, so polled and
manual status changes obey the same transition rules as pushed ones.
"""
import secrets
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import structlog

from merchant_payments.config import Settings, get_settings
from merchant_payments.core.events import Channel, EventKind, NotificationEvent
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.models import Order, OrderStatus
from merchant_payments.core.reconciliation import ApplyResult, ReconciliationEngine
from merchant_payments.integrations.gateway_client import GatewayClient

logger = structlog.get_logger(__name__)


class OrderValidationError(Exception):
    """Raised when order input is incomplete or malformed."""

    pass


def generate_order_id() -> str:
    """Unique merchant order id: ``ORDER-{epoch_ms}-{8 hex}``."""
    return f"ORDER-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def _positive_amount(value: Any, name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise OrderValidationError(f"{name} must be a number") from None
    if not amount.is_finite() or amount <= 0:
        raise OrderValidationError(f"{name} must be positive")
    return amount


@dataclass
class StatusRefresh:
    """Order snapshot after a gateway status poll."""

    order: Order
    result: Optional[ApplyResult] = None
    transactions: list = field(default_factory=list)


class OrderService:
    """
    Creates orders through the gateway and keeps them in the ledger.

    Example:
        >>> service = OrderService(ledger, engine, gateway)
        >>> checkout = await service.create_invoice_order(
        ...     user_id="U1", amount=100, currency="USDT", network="tron"
        ... )
        >>> checkout["amount_to_pay"]
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        engine: ReconciliationEngine,
        gateway: GatewayClient,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.engine = engine
        self.gateway = gateway
        self.settings = settings or get_settings()

    async def create_invoice_order(
        self,
        user_id: str,
        amount: Any,
        currency: str,
        network: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a gateway invoice and a pending order for it.

        Returns:
            Dict[str, Any]: Checkout data for the payment modal

        Raises:
            OrderValidationError: If required fields are missing
            GatewayError: If the gateway refuses or is unreachable
        """
        if not user_id or not amount or not currency or not network:
            raise OrderValidationError("user_id, amount, currency, and network are required")
        requested = _positive_amount(amount, "amount")

        order_id = generate_order_id()
        logger.info(
            "creating_invoice_order",
            order_id=order_id,
            user_id=user_id,
            amount=str(requested),
            currency=currency,
            network=network,
        )

        invoice = await self.gateway.create_invoice(
            amount=float(requested),
            currency=currency,
            network=network,
            order_id=order_id,
            description=description or f"Deposit for user {user_id}",
            metadata={"user_id": user_id},
        )

        invoice_id = invoice.get("invoice_id")
        network_display_name = invoice.get("network_display_name") or network
        order = self.ledger.seed_order(
            order_id=order_id,
            user_id=user_id,
            amount=requested,
            currency=currency,
            network=network,
            invoice_id=invoice_id,
            address=invoice.get("address"),
            payment_id=invoice.get("payment_id"),
            amount_to_pay=invoice.get("amount_to_pay"),
            expires_at=invoice.get("expires_at"),
            description=description,
            network_display_name=network_display_name,
        )

        logger.info(
            "invoice_order_created",
            order_id=order_id,
            invoice_id=invoice_id,
            amount_to_pay=invoice.get("amount_to_pay"),
            payment_id=invoice.get("payment_id"),
        )

        return {
            "id": invoice_id,
            "order_id": order.order_id,
            "address": order.address,
            "amount": invoice.get("amount", float(requested)),
            "amount_to_pay": invoice.get("amount_to_pay"),
            "payment_id": order.payment_id,
            "currency": invoice.get("currency", currency),
            "network": invoice.get("network", network),
            "network_display_name": network_display_name,
            "status": order.status.value,
            "time_remaining": self.settings.invoice_ttl_seconds,
            "expires_at": order.expires_at,
        }

    def create_checkout_order(
        self,
        user_id: str,
        fiat_amount: Any,
        fiat_currency: str,
        currency: str,
        network: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Seed a pending order and sign a hosted-checkout URL for it.

        The gateway creates the invoice itself once the user lands on the
        checkout page; its notifications carry our order id.

        Raises:
            OrderValidationError: If required fields are missing
        """
        if not user_id or not fiat_amount or not fiat_currency or not currency or not network:
            raise OrderValidationError(
                "user_id, fiat_amount, fiat_currency, currency, and network are required"
            )
        fiat = _positive_amount(fiat_amount, "fiat_amount")

        order_id = generate_order_id()
        self.ledger.seed_order(
            order_id=order_id,
            user_id=user_id,
            amount=fiat,
            currency=currency,
            network=network,
            fiat_amount=fiat,
            fiat_currency=fiat_currency,
            description=description,
        )

        checkout_url = self.gateway.create_checkout_url(
            user_id=user_id,
            fiat_amount=float(fiat),
            fiat_currency=fiat_currency,
            currency=currency,
            network=network,
            order_id=order_id,
            description=description,
        )

        logger.info(
            "checkout_order_created",
            order_id=order_id,
            user_id=user_id,
            fiat_amount=str(fiat),
            fiat_currency=fiat_currency,
        )
        return {"order_id": order_id, "checkout_url": checkout_url}

    async def refresh_status(self, ref: str) -> Optional[StatusRefresh]:
        """
        Poll the gateway for an order's invoice and reconcile the answer.

        The gateway call happens outside any ledger lock; the answer enters
        the ledger through the engine like any other notification.

        Args:
            ref: Order id or invoice id

        Returns:
            Optional[StatusRefresh]: None if the order is unknown

        Raises:
            GatewayError: If the gateway cannot be queried
        """
        order = self.ledger.get_order(ref)
        if order is None:
            return None
        if not order.invoice_id:
            # Hosted checkout not started yet; nothing to ask the gateway
            return StatusRefresh(order=order)

        status = await self.gateway.get_invoice_status(order.invoice_id)
        payload = dict(status)
        payload.setdefault("invoice_id", order.invoice_id)
        payload.setdefault("merchant_order_id", order.order_id)

        event = NotificationEvent.from_payload(payload, Channel.POLL)
        result = await self.engine.apply(event)

        logger.info(
            "order_status_refreshed",
            order_id=order.order_id,
            gateway_status=status.get("status"),
            outcome=result.outcome.value,
        )
        transactions = status.get("transactions")
        return StatusRefresh(
            order=self.ledger.get_order(order.order_id) or order,
            result=result,
            transactions=transactions if isinstance(transactions, list) else [],
        )

    async def cancel_order(self, invoice_id: str) -> Dict[str, Any]:
        """
        Cancel an invoice at the gateway and mirror it in the ledger.

        Returns:
            Dict[str, Any]: Gateway response body

        Raises:
            GatewayError: If the gateway refuses the cancellation
        """
        response = await self.gateway.cancel_invoice(invoice_id)

        event = NotificationEvent(
            kind=EventKind.CANCELLED,
            invoice_id=invoice_id,
            status=OrderStatus.CANCELLED.value,
            channel=Channel.MANUAL,
            event_name="invoice.cancelled",
        )
        result = await self.engine.apply(event)
        logger.info("invoice_cancelled", invoice_id=invoice_id, outcome=result.outcome.value)
        return response
