"""Core payment reconciliation logic."""
from .events import Channel, EventKind, EventNormalizationError, NotificationEvent
from .ledger import LedgerError, PaymentLedger
from .models import Order, OrderStatus
from .reconciliation import ApplyOutcome, ApplyResult, ReconciliationEngine
from .signature import SignatureVerifier

__all__ = [
    "ApplyOutcome",
    "ApplyResult",
    "Channel",
    "EventKind",
    "EventNormalizationError",
    "LedgerError",
    "NotificationEvent",
    "Order",
    "OrderStatus",
    "PaymentLedger",
    "ReconciliationEngine",
    "SignatureVerifier",
]
