"""
In-process payment ledger.

Authoritative store of:
1. Orders keyed by merchant order id
2. Invoice index: gateway invoice id -> order id
3. Per-user cumulative confirmed USD balance

Concurrency control lives here: every order has its own asyncio lock, and the
reconciliation engine performs its read-check-write of an order (including the
balance credit it licenses) while holding that lock. Readers only ever receive
snapshots.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog

from merchant_payments.core.models import Order, OrderStatus, utcnow

logger = structlog.get_logger(__name__)


class LedgerError(Exception):
    """Raised on invalid ledger operations."""

    pass


class PaymentLedger:
    """
    Orders, invoice index and user balances with per-order locking.

    Example:
        >>> ledger = PaymentLedger()
        >>> ledger.seed_order(order_id="ORDER-1", user_id="U1", amount=100,
        ...                   currency="USDT", network="tron", invoice_id="inv_1")
        >>> async with ledger.order_lock("ORDER-1"):
        ...     order = ledger.load_for_update("ORDER-1")
    """

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._invoice_index: Dict[str, str] = {}
        self._balances: Dict[str, Decimal] = defaultdict(Decimal)
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Seeding (order-creation collaborator)
    # ------------------------------------------------------------------

    def seed_order(
        self,
        order_id: str,
        user_id: str,
        amount: Any,
        currency: str,
        network: str,
        invoice_id: Optional[str] = None,
        address: Optional[str] = None,
        payment_id: Optional[str] = None,
        amount_to_pay: Any = None,
        expires_at: Optional[str] = None,
        fiat_amount: Any = None,
        fiat_currency: Optional[str] = None,
        description: Optional[str] = None,
        network_display_name: Optional[str] = None,
    ) -> Order:
        """
        Create a pending order.

        Returns:
            Order: Snapshot of the new order

        Raises:
            LedgerError: If order_id already exists or required fields are missing
        """
        if not order_id or not user_id:
            raise LedgerError("order_id and user_id are required")
        if order_id in self._orders:
            raise LedgerError(f"Order already exists: {order_id}")

        order = Order(
            order_id=order_id,
            user_id=str(user_id),
            amount=Decimal(str(amount)),
            currency=currency,
            network=network,
            address=address,
            payment_id=payment_id,
            amount_to_pay=Decimal(str(amount_to_pay)) if amount_to_pay is not None else None,
            expires_at=expires_at,
            fiat_amount=Decimal(str(fiat_amount)) if fiat_amount is not None else None,
            fiat_currency=fiat_currency,
            description=description,
            network_display_name=network_display_name,
        )
        self._orders[order_id] = order
        if invoice_id:
            self.index_invoice(invoice_id, order_id)

        logger.info(
            "order_seeded",
            order_id=order_id,
            user_id=order.user_id,
            invoice_id=invoice_id,
            amount=str(order.amount),
            currency=currency,
            network=network,
        )
        return order.snapshot()

    # ------------------------------------------------------------------
    # Invoice index
    # ------------------------------------------------------------------

    def index_invoice(self, invoice_id: str, order_id: str) -> bool:
        """
        Bind a gateway invoice id to an order. First binding wins.

        Returns:
            bool: True if the index now maps invoice_id to order_id
        """
        if not invoice_id or order_id not in self._orders:
            return False

        existing = self._invoice_index.get(invoice_id)
        if existing is not None and existing != order_id:
            logger.warning(
                "invoice_index_conflict",
                invoice_id=invoice_id,
                indexed_order_id=existing,
                rejected_order_id=order_id,
            )
            return False

        order = self._orders[order_id]
        if order.invoice_id and order.invoice_id != invoice_id:
            logger.warning(
                "order_invoice_conflict",
                order_id=order_id,
                invoice_id=order.invoice_id,
                rejected_invoice_id=invoice_id,
            )
            return False

        if existing is None:
            self._invoice_index[invoice_id] = order_id
            order.invoice_id = invoice_id
            logger.info("invoice_indexed", invoice_id=invoice_id, order_id=order_id)
        return True

    def resolve_order_id(
        self, order_id: Optional[str] = None, invoice_id: Optional[str] = None
    ) -> Optional[str]:
        """Find the owning order by embedded order id, else via the invoice index."""
        if order_id and order_id in self._orders:
            return order_id
        if invoice_id:
            return self._invoice_index.get(invoice_id)
        return None

    # ------------------------------------------------------------------
    # Critical section
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def order_lock(self, order_id: str) -> AsyncIterator[None]:
        """Serialize all mutations of one order."""
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks.setdefault(order_id, asyncio.Lock())
        async with lock:
            yield

    def load_for_update(self, order_id: str) -> Order:
        """
        Live order record. Only call while holding ``order_lock(order_id)``.

        Raises:
            LedgerError: If the order does not exist
        """
        try:
            return self._orders[order_id]
        except KeyError:
            raise LedgerError(f"Unknown order: {order_id}") from None

    def credit_user(self, user_id: str, amount: Decimal) -> Decimal:
        """
        Add a confirmed amount to a user's balance.

        Only call inside the critical section of the order being credited.

        Returns:
            Decimal: New balance
        """
        if amount < 0:
            raise LedgerError(f"Refusing negative credit for user {user_id}: {amount}")
        self._balances[user_id] += amount
        return self._balances[user_id]

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def get_order(self, ref: str) -> Optional[Order]:
        """Snapshot of an order by order id or invoice id."""
        order_id = self.resolve_order_id(order_id=ref, invoice_id=ref)
        if order_id is None:
            return None
        return self._orders[order_id].snapshot()

    def get_user_balance(self, user_id: str) -> Decimal:
        """Cumulative confirmed USD amount for a user."""
        return self._balances.get(user_id, Decimal("0"))

    def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
    ) -> List[Order]:
        """Order snapshots, newest first, optionally filtered."""
        orders = [
            order
            for order in self._orders.values()
            if (user_id is None or order.user_id == user_id)
            and (status is None or order.status == status)
        ]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return [order.snapshot() for order in orders]

    def stale_orders(self, statuses: List[OrderStatus], min_age_seconds: float) -> List[str]:
        """Ids of orders in the given states not updated for min_age_seconds."""
        now = utcnow()
        return [
            order.order_id
            for order in self._orders.values()
            if order.status in statuses
            and (now - order.updated_at).total_seconds() >= min_age_seconds
        ]

    def stats(self) -> Dict[str, Any]:
        """Order counts per status and total credited USD."""
        counts = {status.value: 0 for status in OrderStatus}
        for order in self._orders.values():
            counts[order.status.value] += 1
        return {
            "orders": len(self._orders),
            "by_status": counts,
            "indexed_invoices": len(self._invoice_index),
            "total_credited_usd": float(sum(self._balances.values(), Decimal("0"))),
        }
