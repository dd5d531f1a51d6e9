"""
Tests for the webhook handler.
"""
from decimal import Decimal

import pytest

from conftest import WEBHOOK_SECRET, sign, webhook_body
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.models import Order, OrderStatus
from merchant_payments.core.reconciliation import ReconciliationEngine
from merchant_payments.integrations.webhook_handler import (
    WebhookAuthenticationError,
    WebhookHandler,
    WebhookPayloadError,
)


@pytest.fixture
def handler(engine: ReconciliationEngine) -> WebhookHandler:
    return WebhookHandler(engine, WEBHOOK_SECRET)


class TestWebhookHandler:
    """Test suite for WebhookHandler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signed_confirmation_credits(
        self, handler: WebhookHandler, ledger: PaymentLedger, pending_order: Order
    ) -> None:
        body = webhook_body(
            event="payment.confirmed", invoice_id="inv_1", status="confirmed", usd_amount=99.8
        )

        result = await handler.handle(body, sign(body))

        assert result["received"] is True
        assert result["outcome"] == "credited"
        assert result["order_id"] == "O1"
        assert result["credited_amount"] == 99.8
        assert ledger.get_user_balance("U1") == Decimal("99.8")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_header_used_for_kind(
        self, handler: WebhookHandler, ledger: PaymentLedger, pending_order: Order
    ) -> None:
        body = webhook_body(invoice_id="inv_1", amount_received=100)

        result = await handler.handle(body, sign(body), event_name="payment.paid")

        assert result["outcome"] == "applied"
        assert ledger.get_order("O1").status is OrderStatus.PAID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_rejected_before_parsing(
        self, handler: WebhookHandler, ledger: PaymentLedger, pending_order: Order
    ) -> None:
        body = webhook_body(event="payment.confirmed", invoice_id="inv_1", usd_amount=99.8)

        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(body, sign(body, "wrong_secret"))
        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(body, None)
        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(b"not json", "deadbeef")

        assert ledger.get_order("O1").status is OrderStatus.PENDING
        assert ledger.get_user_balance("U1") == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_reserialized_body_fails_verification(
        self, handler: WebhookHandler, pending_order: Order
    ) -> None:
        body = b'{"event": "payment.paid", "invoice_id": "inv_1"}'
        compact = b'{"event":"payment.paid","invoice_id":"inv_1"}'

        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(body, sign(compact))

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"not json", b"[1, 2]", b'"text"'])
    async def test_signed_garbage_is_payload_error(self, handler: WebhookHandler, body: bytes) -> None:
        with pytest.raises(WebhookPayloadError):
            await handler.handle(body, sign(body))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_invoice_acknowledged(self, handler: WebhookHandler) -> None:
        body = webhook_body(event="payment.confirmed", invoice_id="inv_elsewhere")

        result = await handler.handle(body, sign(body))

        assert result["received"] is True
        assert result["outcome"] == "unknown_order"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_secret_rejects_everything(self, engine: ReconciliationEngine) -> None:
        handler = WebhookHandler(engine, "")
        body = webhook_body(event="payment.paid", invoice_id="inv_1")

        with pytest.raises(WebhookAuthenticationError):
            await handler.handle(body, sign(body, ""))
