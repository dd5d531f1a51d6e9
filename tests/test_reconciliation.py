"""
Tests for the reconciliation engine.
"""
from decimal import Decimal
from typing import Any

import pytest

from merchant_payments.core.events import Channel, NotificationEvent
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.models import Order, OrderStatus
from merchant_payments.core.reconciliation import (
    ApplyOutcome,
    ReconciliationEngine,
    usd_amount_only,
)


def _event(channel: Channel = Channel.WEBHOOK, **payload: Any) -> NotificationEvent:
    payload.setdefault("invoice_id", "inv_1")
    return NotificationEvent.from_payload(payload, channel)


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine.apply."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_then_confirmed_credits_once(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        paid = await engine.apply(_event(event="payment.paid", amount_received=100))
        confirmed = await engine.apply(
            _event(Channel.STREAM, event="payment.confirmed", usd_amount=99.8)
        )
        redelivered = await engine.apply(_event(event="payment.paid", amount_received=100))

        assert paid.outcome is ApplyOutcome.APPLIED
        assert confirmed.outcome is ApplyOutcome.CREDITED
        assert confirmed.credited_amount == Decimal("99.8")
        assert redelivered.outcome is ApplyOutcome.STALE

        order = ledger.get_order("O1")
        assert order.status is OrderStatus.CONFIRMED
        assert order.amount_received == Decimal("100")
        assert order.credited_amount == Decimal("99.8")
        assert ledger.get_user_balance("U1") == Decimal("99.80")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_confirmation_is_noop(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        first = await engine.apply(_event(event="payment.confirmed", usd_amount=50))
        second = await engine.apply(_event(Channel.STREAM, event="payment.confirmed", usd_amount=50))

        assert first.outcome is ApplyOutcome.CREDITED
        assert second.outcome is ApplyOutcome.DUPLICATE
        assert ledger.get_user_balance("U1") == Decimal("50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmation_overtaking_paid_records_both_steps(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        result = await engine.apply(_event(event="payment.confirmed", usd_amount=100))
        late_paid = await engine.apply(_event(event="payment.paid", amount_received=100))

        assert result.outcome is ApplyOutcome.CREDITED
        assert result.previous_status is OrderStatus.PENDING
        assert late_paid.outcome is ApplyOutcome.STALE

        history = ledger.get_order("O1").history
        assert [(h.from_status, h.to_status) for h in history] == [
            (OrderStatus.PENDING, OrderStatus.PAID),
            (OrderStatus.PAID, OrderStatus.CONFIRMED),
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fallback_credits_received_amount(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        await engine.apply(_event(event="payment.paid", amount_received="99.80"))
        result = await engine.apply(_event(event="payment.confirmed"))

        assert result.outcome is ApplyOutcome.CREDITED
        assert result.credited_amount == Decimal("99.80")
        assert ledger.get_user_balance("U1") == Decimal("99.80")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_usd_amount_from_earlier_event_is_used(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        await engine.apply(_event(event="payment.paid", amount_received=100, usd_amount=99.9))
        result = await engine.apply(_event(event="payment.confirmed"))

        assert result.credited_amount == Decimal("99.9")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_strict_policy_confirms_without_credit(
        self, ledger: PaymentLedger, pending_order: Order
    ) -> None:
        engine = ReconciliationEngine(ledger, credit_policy=usd_amount_only)

        result = await engine.apply(_event(event="payment.confirmed", amount_received=100))

        assert result.outcome is ApplyOutcome.APPLIED
        assert result.status is OrderStatus.CONFIRMED
        assert ledger.get_order("O1").credited_amount is None
        assert ledger.get_user_balance("U1") == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order_ignored(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        result = await engine.apply(
            _event(invoice_id="inv_other", event="payment.confirmed", usd_amount=10)
        )

        assert result.outcome is ApplyOutcome.UNKNOWN_ORDER
        assert result.order_id is None
        assert ledger.get_user_balance("U1") == Decimal("0")
        assert ledger.get_order("O1").status is OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolves_by_merchant_order_id_and_indexes_invoice(
        self, ledger: PaymentLedger, engine: ReconciliationEngine
    ) -> None:
        ledger.seed_order("O2", "U2", 25, "USDT", "tron")

        result = await engine.apply(
            _event(invoice_id="inv_new", merchant_order_id="O2", event="payment.paid")
        )

        assert result.outcome is ApplyOutcome.APPLIED
        assert ledger.resolve_order_id(invoice_id="inv_new") == "O2"
        assert ledger.get_order("O2").invoice_id == "inv_new"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_ignored(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        result = await engine.apply(_event(event="payment.refunded"))

        assert result.outcome is ApplyOutcome.UNKNOWN_STATUS
        assert ledger.get_order("O1").status is OrderStatus.PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_status_still_binds_invoice(
        self, ledger: PaymentLedger, engine: ReconciliationEngine
    ) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron")

        first = await engine.apply(
            _event(
                invoice_id="inv_9",
                merchant_order_id="O1",
                event="payment.detected",
                status="detected",
            )
        )
        assert first.outcome is ApplyOutcome.UNKNOWN_STATUS
        assert ledger.resolve_order_id(invoice_id="inv_9") == "O1"

        confirmed = await engine.apply(
            _event(Channel.STREAM, invoice_id="inv_9", event="payment.confirmed", usd_amount=99.8)
        )

        assert confirmed.outcome is ApplyOutcome.CREDITED
        assert ledger.get_user_balance("U1") == Decimal("99.8")

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", ["expired", "failed", "cancelled"])
    async def test_terminal_orders_never_credit(
        self,
        ledger: PaymentLedger,
        engine: ReconciliationEngine,
        pending_order: Order,
        terminal: str,
    ) -> None:
        await engine.apply(_event(event=f"payment.{terminal}"))
        result = await engine.apply(_event(event="payment.confirmed", usd_amount=100))

        assert result.outcome is ApplyOutcome.STALE
        assert ledger.get_order("O1").status.value == terminal
        assert ledger.get_user_balance("U1") == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmed_is_never_regressed(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        await engine.apply(_event(event="payment.confirmed", usd_amount=100))

        for name in ("payment.created", "payment.paid", "payment.expired", "payment.failed"):
            result = await engine.apply(_event(event=name))
            assert result.outcome is ApplyOutcome.STALE

        order = ledger.get_order("O1")
        assert order.status is OrderStatus.CONFIRMED
        assert ledger.get_user_balance("U1") == Decimal("100")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_paid_order_cannot_expire(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        await engine.apply(_event(event="payment.paid", amount_received=100))
        result = await engine.apply(_event(event="payment.expired"))

        assert result.outcome is ApplyOutcome.REJECTED
        assert ledger.get_order("O1").status is OrderStatus.PAID

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_received_amount_never_decreases(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        await engine.apply(_event(event="payment.paid", amount_received=100))
        await engine.apply(_event(event="payment.confirmed", amount_received=0, usd_amount=99.8))

        assert ledger.get_order("O1").amount_received == Decimal("100")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_negative_usd_amount_not_credited(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        result = await engine.apply(_event(event="payment.confirmed", usd_amount=-5))

        assert result.outcome is ApplyOutcome.APPLIED
        assert ledger.get_user_balance("U1") == Decimal("0")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_history_records_channels(
        self, ledger: PaymentLedger, engine: ReconciliationEngine, pending_order: Order
    ) -> None:
        await engine.apply(_event(Channel.WEBHOOK, event="payment.paid"))
        await engine.apply(_event(Channel.POLL, event="payment.confirmed", usd_amount=1))

        history = ledger.get_order("O1").history
        assert [h.channel for h in history] == ["webhook", "poll"]
