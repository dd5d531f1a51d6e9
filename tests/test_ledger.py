"""
Tests for the payment ledger.
"""
import asyncio
from decimal import Decimal

import pytest

from merchant_payments.core.ledger import LedgerError, PaymentLedger
from merchant_payments.core.models import OrderStatus


class TestPaymentLedger:
    """Test suite for PaymentLedger."""

    @pytest.mark.unit
    def test_seed_order_indexes_invoice(self, ledger: PaymentLedger) -> None:
        order = ledger.seed_order("O1", "U1", 100, "USDT", "tron", invoice_id="inv_1")

        assert order.status is OrderStatus.PENDING
        assert order.amount == Decimal("100")
        assert ledger.resolve_order_id(invoice_id="inv_1") == "O1"
        assert ledger.resolve_order_id(order_id="O1") == "O1"

    @pytest.mark.unit
    def test_duplicate_order_rejected(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron")
        with pytest.raises(LedgerError):
            ledger.seed_order("O1", "U2", 5, "USDT", "tron")

    @pytest.mark.unit
    def test_missing_ids_rejected(self, ledger: PaymentLedger) -> None:
        with pytest.raises(LedgerError):
            ledger.seed_order("", "U1", 100, "USDT", "tron")

    @pytest.mark.unit
    def test_invoice_index_first_binding_wins(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron", invoice_id="inv_1")
        ledger.seed_order("O2", "U1", 50, "USDT", "tron")

        assert ledger.index_invoice("inv_1", "O2") is False
        assert ledger.resolve_order_id(invoice_id="inv_1") == "O1"
        assert ledger.index_invoice("inv_2", "O2") is True
        assert ledger.index_invoice("inv_2", "O2") is True
        assert ledger.index_invoice("inv_3", "O2") is False

    @pytest.mark.unit
    def test_index_unknown_order_ignored(self, ledger: PaymentLedger) -> None:
        assert ledger.index_invoice("inv_9", "missing") is False
        assert ledger.resolve_order_id(invoice_id="inv_9") is None

    @pytest.mark.unit
    def test_resolve_prefers_order_id(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron", invoice_id="inv_1")
        ledger.seed_order("O2", "U1", 100, "USDT", "tron", invoice_id="inv_2")

        assert ledger.resolve_order_id(order_id="O2", invoice_id="inv_1") == "O2"
        assert ledger.resolve_order_id(order_id="unknown", invoice_id="inv_1") == "O1"
        assert ledger.resolve_order_id() is None

    @pytest.mark.unit
    def test_snapshots_are_detached(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron", invoice_id="inv_1")

        snapshot = ledger.get_order("inv_1")
        snapshot.status = OrderStatus.CONFIRMED
        snapshot.history.append("bogus")

        fresh = ledger.get_order("O1")
        assert fresh.status is OrderStatus.PENDING
        assert fresh.history == []

    @pytest.mark.unit
    def test_balance_defaults_to_zero(self, ledger: PaymentLedger) -> None:
        assert ledger.get_user_balance("nobody") == Decimal("0")

    @pytest.mark.unit
    def test_credit_user_accumulates(self, ledger: PaymentLedger) -> None:
        assert ledger.credit_user("U1", Decimal("10.5")) == Decimal("10.5")
        assert ledger.credit_user("U1", Decimal("4.5")) == Decimal("15.0")
        assert ledger.get_user_balance("U1") == Decimal("15.0")

    @pytest.mark.unit
    def test_negative_credit_rejected(self, ledger: PaymentLedger) -> None:
        with pytest.raises(LedgerError):
            ledger.credit_user("U1", Decimal("-1"))
        assert ledger.get_user_balance("U1") == Decimal("0")

    @pytest.mark.unit
    def test_load_for_update_unknown_order(self, ledger: PaymentLedger) -> None:
        with pytest.raises(LedgerError):
            ledger.load_for_update("missing")

    @pytest.mark.unit
    def test_list_orders_filters(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron")
        ledger.seed_order("O2", "U2", 100, "USDT", "tron")
        ledger.seed_order("O3", "U1", 100, "USDT", "tron")
        ledger.load_for_update("O3").status = OrderStatus.CONFIRMED

        assert {o.order_id for o in ledger.list_orders(user_id="U1")} == {"O1", "O3"}
        assert [o.order_id for o in ledger.list_orders(status=OrderStatus.CONFIRMED)] == ["O3"]
        assert len(ledger.list_orders()) == 3

    @pytest.mark.unit
    def test_stale_orders(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron")
        ledger.seed_order("O2", "U1", 100, "USDT", "tron")
        ledger.load_for_update("O2").status = OrderStatus.EXPIRED

        assert ledger.stale_orders([OrderStatus.PENDING, OrderStatus.PAID], 0) == ["O1"]
        assert ledger.stale_orders([OrderStatus.PENDING], 3600) == []

    @pytest.mark.unit
    def test_stats(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron", invoice_id="inv_1")
        ledger.credit_user("U1", Decimal("20"))

        stats = ledger.stats()
        assert stats["orders"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["indexed_invoices"] == 1
        assert stats["total_credited_usd"] == 20.0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_order_lock_serializes_same_order(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron")
        inside = 0
        max_inside = 0

        async def critical() -> None:
            nonlocal inside, max_inside
            async with ledger.order_lock("O1"):
                inside += 1
                max_inside = max(max_inside, inside)
                await asyncio.sleep(0.001)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(10)))
        assert max_inside == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_order_lock_independent_across_orders(self, ledger: PaymentLedger) -> None:
        ledger.seed_order("O1", "U1", 100, "USDT", "tron")
        ledger.seed_order("O2", "U1", 100, "USDT", "tron")

        async with ledger.order_lock("O1"):
            # Would deadlock if O2 shared O1's lock
            await asyncio.wait_for(_enter(ledger, "O2"), timeout=1.0)


async def _enter(ledger: PaymentLedger, order_id: str) -> None:
    async with ledger.order_lock(order_id):
        pass
