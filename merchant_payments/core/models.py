"""
Order record and lifecycle state machine.

State machine:
    pending ──→ paid ──→ confirmed
       │         │
       │         └──→ failed
       ├──→ confirmed   (confirmation overtook its paid event)
       ├──→ expired
       ├──→ failed
       └──→ cancelled

confirmed, expired, failed and cancelled are terminal.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PAID = "paid"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @classmethod
    def parse(cls, value: Any) -> Optional["OrderStatus"]:
        """Parse a gateway status string, None if it is not a lifecycle state."""
        if isinstance(value, OrderStatus):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized == "canceled":
            normalized = "cancelled"
        try:
            return cls(normalized)
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset(
        {
            OrderStatus.PAID,
            OrderStatus.CONFIRMED,
            OrderStatus.EXPIRED,
            OrderStatus.FAILED,
            OrderStatus.CANCELLED,
        }
    ),
    OrderStatus.PAID: frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED}),
    OrderStatus.CONFIRMED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Position along the success path, used to tell stale events from bad ones
_PROGRESS_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.CONFIRMED: 2,
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Check whether target extends current per the transition table."""
    return target in ALLOWED_TRANSITIONS[current]


def is_behind(current: OrderStatus, target: OrderStatus) -> bool:
    """
    True if target is a state the order has already moved past.

    Every event for a terminal order is behind it; otherwise only earlier
    steps on the success path are.
    """
    if current.is_terminal:
        return True
    if target in _PROGRESS_RANK and current in _PROGRESS_RANK:
        return _PROGRESS_RANK[target] < _PROGRESS_RANK[current]
    return False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StatusChange:
    """One applied transition, kept for the order's audit trail."""

    from_status: OrderStatus
    to_status: OrderStatus
    channel: str
    at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_status.value,
            "to": self.to_status.value,
            "channel": self.channel,
            "at": self.at.isoformat(),
        }


@dataclass
class Order:
    """
    Merchant-side record of one payment attempt.

    Mutated only by the ledger's owner inside the per-order critical section;
    callers outside the core only ever see snapshots.
    """

    order_id: str
    user_id: str
    amount: Decimal
    currency: str
    network: str
    status: OrderStatus = OrderStatus.PENDING
    invoice_id: Optional[str] = None
    address: Optional[str] = None
    payment_id: Optional[str] = None
    amount_to_pay: Optional[Decimal] = None
    amount_received: Decimal = Decimal("0")
    usd_amount: Optional[Decimal] = None
    credited_amount: Optional[Decimal] = None
    fiat_amount: Optional[Decimal] = None
    fiat_currency: Optional[str] = None
    description: Optional[str] = None
    network_display_name: Optional[str] = None
    expires_at: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    history: List[StatusChange] = field(default_factory=list)

    def snapshot(self) -> "Order":
        """Deep copy safe to hand out to readers."""
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation."""

        def _num(value: Optional[Decimal]) -> Optional[float]:
            return float(value) if value is not None else None

        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "invoice_id": self.invoice_id,
            "status": self.status.value,
            "amount": _num(self.amount),
            "amount_to_pay": _num(self.amount_to_pay),
            "amount_received": _num(self.amount_received),
            "usd_amount": _num(self.usd_amount),
            "credited_amount": _num(self.credited_amount),
            "fiat_amount": _num(self.fiat_amount),
            "fiat_currency": self.fiat_currency,
            "currency": self.currency,
            "network": self.network,
            "network_display_name": self.network_display_name or self.network,
            "address": self.address,
            "payment_id": self.payment_id,
            "description": self.description,
            "expires_at": self.expires_at,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "history": [change.to_dict() for change in self.history],
        }
