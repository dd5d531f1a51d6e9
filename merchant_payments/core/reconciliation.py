"""
Reconciliation engine for payment notifications.

Merges events from the webhook, stream and polling channels into the ledger:
- Resolves the owning order (order id, else invoice index)
- Discards unknown, duplicate and stale events as no-ops
- Applies forward transitions only
- Credits the user's balance exactly once, on entry into ``confirmed``

Everything for one order happens under that order's ledger lock, so a webhook
and a stream notification racing for the same order cannot both pass the
transition check.
"""
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

from merchant_payments.core.events import NotificationEvent
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.models import (
    Order,
    OrderStatus,
    StatusChange,
    can_transition,
    is_behind,
    utcnow,
)
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# (amount to credit or None, source label)
CreditPolicy = Callable[[Order], Tuple[Optional[Decimal], str]]


def usd_or_received_amount(order: Order) -> Tuple[Optional[Decimal], str]:
    """
    Credit the USD equivalent, falling back to the raw received amount.

    The fallback treats crypto units as dollars. It only holds for
    USD-pegged assets and is kept for compatibility with integrations that
    never send ``usd_amount``.
    """
    if order.usd_amount is not None:
        return order.usd_amount, "usd_amount"
    logger.warning(
        "credit_amount_fallback_used",
        order_id=order.order_id,
        amount_received=str(order.amount_received),
        currency=order.currency,
    )
    return order.amount_received, "received_amount"


def usd_amount_only(order: Order) -> Tuple[Optional[Decimal], str]:
    """Credit only a gateway-supplied USD amount; never guess."""
    if order.usd_amount is not None:
        return order.usd_amount, "usd_amount"
    return None, "missing_usd_amount"


class ApplyOutcome(str, Enum):
    """What apply() did with an event."""

    APPLIED = "applied"
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    STALE = "stale"
    UNKNOWN_ORDER = "unknown_order"
    UNKNOWN_STATUS = "unknown_status"
    REJECTED = "rejected"

    @property
    def changed_state(self) -> bool:
        return self in (ApplyOutcome.APPLIED, ApplyOutcome.CREDITED)


@dataclass(frozen=True)
class ApplyResult:
    """Result of applying one notification event."""

    outcome: ApplyOutcome
    order_id: Optional[str] = None
    previous_status: Optional[OrderStatus] = None
    status: Optional[OrderStatus] = None
    credited_amount: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "order_id": self.order_id,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status": self.status.value if self.status else None,
            "credited_amount": (
                float(self.credited_amount) if self.credited_amount is not None else None
            ),
        }


class ReconciliationEngine:
    """
    Applies NotificationEvents to the PaymentLedger idempotently.

    Safe to call concurrently from any number of channels.
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        credit_policy: Optional[CreditPolicy] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            ledger: Ledger owning orders, invoice index and balances
            credit_policy: How to size the credit on confirmation
                (defaults to usd_or_received_amount)
        """
        self.ledger = ledger
        self.credit_policy = credit_policy or usd_or_received_amount
        logger.info(
            "reconciliation_engine_initialized",
            credit_policy=getattr(self.credit_policy, "__name__", repr(self.credit_policy)),
        )

    async def apply(self, event: NotificationEvent) -> ApplyResult:
        """
        Apply one event to the ledger.

        Args:
            event: Normalized notification event

        Returns:
            ApplyResult: Outcome, never raises for unknown/stale/duplicate events
        """
        start_time = time.perf_counter()
        result = await self._apply(event)
        metrics.record_notification(
            event.channel.value, result.outcome.value, time.perf_counter() - start_time
        )
        return result

    async def _apply(self, event: NotificationEvent) -> ApplyResult:
        log = logger.bind(
            channel=event.channel.value,
            event_name=event.event_name,
            invoice_id=event.invoice_id,
            merchant_order_id=event.order_id,
        )

        order_id = self.ledger.resolve_order_id(event.order_id, event.invoice_id)
        if order_id is None:
            # May belong to another instance or predate this process
            log.info("notification_order_not_found")
            return ApplyResult(ApplyOutcome.UNKNOWN_ORDER)

        target = event.target_status

        async with self.ledger.order_lock(order_id):
            # Bind the invoice even when the status is unusable
            if event.invoice_id:
                self.ledger.index_invoice(event.invoice_id, order_id)

            if target is None:
                log.warning("notification_status_unrecognized", status=event.status, kind=event.kind.value)
                return ApplyResult(ApplyOutcome.UNKNOWN_STATUS, order_id=order_id)

            order = self.ledger.load_for_update(order_id)
            current = order.status
            log = log.bind(order_id=order_id, current_status=current.value, target_status=target.value)

            if event.user_id and event.user_id != order.user_id:
                log.warning("notification_user_mismatch", event_user_id=event.user_id, order_user_id=order.user_id)

            if target == current:
                log.debug("notification_duplicate")
                return ApplyResult(ApplyOutcome.DUPLICATE, order_id, current, current)

            if not can_transition(current, target):
                if is_behind(current, target):
                    log.info("notification_stale")
                    return ApplyResult(ApplyOutcome.STALE, order_id, current, current)
                log.warning("notification_transition_rejected")
                return ApplyResult(ApplyOutcome.REJECTED, order_id, current, current)

            self._transition(order, target, event)

            if target is not OrderStatus.CONFIRMED:
                log.info(
                    "order_status_updated",
                    amount_received=str(order.amount_received),
                    currency=order.currency,
                )
                return ApplyResult(ApplyOutcome.APPLIED, order_id, current, target)

            credited = self._credit(order, log)
            if credited is None:
                return ApplyResult(ApplyOutcome.APPLIED, order_id, current, target)
            return ApplyResult(ApplyOutcome.CREDITED, order_id, current, target, credited)

    @staticmethod
    def _transition(order: Order, target: OrderStatus, event: NotificationEvent) -> None:
        """Move order to target and copy amounts from the event. Lock must be held."""
        now = utcnow()
        channel = event.channel.value

        if order.status is OrderStatus.PENDING and target is OrderStatus.CONFIRMED:
            order.history.append(StatusChange(order.status, OrderStatus.PAID, channel, now))
            order.history.append(StatusChange(OrderStatus.PAID, target, channel, now))
        else:
            order.history.append(StatusChange(order.status, target, channel, now))

        order.status = target
        # Received amounts only grow; a confirmation may omit the figure
        if event.amount_received > order.amount_received:
            order.amount_received = event.amount_received
        if event.usd_amount is not None:
            order.usd_amount = event.usd_amount
        if event.fiat_amount is not None:
            order.fiat_amount = event.fiat_amount
        if event.fiat_currency:
            order.fiat_currency = event.fiat_currency
        order.updated_at = now

    def _credit(self, order: Order, log: Any) -> Optional[Decimal]:
        """
        Credit the user for a freshly confirmed order. Lock must be held.

        The credited amount is fixed here; later events never touch it.
        """
        amount, source = self.credit_policy(order)
        if amount is not None and amount < 0:
            amount, source = None, "negative_amount"
        if amount is None:
            log.error("order_confirmed_without_credit", reason=source, user_id=order.user_id)
            return None

        order.credited_amount = amount
        new_balance = self.ledger.credit_user(order.user_id, amount)
        metrics.record_balance_credit(source, float(amount))
        log.info(
            "balance_credited",
            user_id=order.user_id,
            credited_usd=str(amount),
            credit_source=source,
            amount_received=str(order.amount_received),
            currency=order.currency,
            new_balance=str(new_balance),
        )
        return amount
