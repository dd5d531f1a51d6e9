"""
Channel-agnostic notification events.

Webhook bodies and stream frames carry loosely shaped JSON. Both are
normalized here into one closed NotificationEvent before they reach the
reconciliation engine; fields outside the closed shape are kept in
``metadata`` and never drive control flow.
"""
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field

from merchant_payments.core.models import OrderStatus

logger = structlog.get_logger(__name__)


class EventNormalizationError(Exception):
    """Raised when a payload cannot be turned into a NotificationEvent."""

    pass


class EventKind(str, Enum):
    """What happened to the invoice, as announced by the gateway."""

    CREATED = "created"
    PAID = "paid"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @classmethod
    def from_event_name(cls, name: Optional[str]) -> "EventKind":
        """
        Parse ``payment.confirmed``, ``invoice.paid``, ``confirmed`` etc.

        Only the last dotted segment matters.
        """
        if not name or not isinstance(name, str):
            return cls.UNKNOWN
        suffix = name.strip().lower().rsplit(".", 1)[-1]
        suffix = _KIND_ALIASES.get(suffix, suffix)
        try:
            return cls(suffix)
        except ValueError:
            return cls.UNKNOWN


_KIND_ALIASES = {
    "pending": "created",
    "canceled": "cancelled",
}

_KIND_TO_STATUS = {
    EventKind.CREATED: OrderStatus.PENDING,
    EventKind.PAID: OrderStatus.PAID,
    EventKind.CONFIRMED: OrderStatus.CONFIRMED,
    EventKind.EXPIRED: OrderStatus.EXPIRED,
    EventKind.FAILED: OrderStatus.FAILED,
    EventKind.CANCELLED: OrderStatus.CANCELLED,
}


class Channel(str, Enum):
    """Where an event came from. Diagnostics only."""

    WEBHOOK = "webhook"
    STREAM = "stream"
    POLL = "poll"
    MANUAL = "manual"


# Payload keys consumed into the closed shape; everything else goes to metadata
_KNOWN_FIELDS = frozenset(
    {
        "event",
        "invoice_id",
        "id",
        "merchant_order_id",
        "order_id",
        "status",
        "amount_received",
        "currency",
        "usd_amount",
        "fiat_amount",
        "fiat_currency",
        "user_id",
        "metadata",
    }
)


def _to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a JSON number or numeric string; None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not result.is_finite():
        return None
    return result


def _to_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class NotificationEvent(BaseModel):
    """Unified status update about an invoice/order."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind = EventKind.UNKNOWN
    invoice_id: Optional[str] = None
    order_id: Optional[str] = None
    status: Optional[str] = None
    amount_received: Decimal = Decimal("0")
    currency: Optional[str] = None
    usd_amount: Optional[Decimal] = None
    fiat_amount: Optional[Decimal] = None
    fiat_currency: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    channel: Channel = Channel.WEBHOOK
    event_name: Optional[str] = None

    @property
    def target_status(self) -> Optional[OrderStatus]:
        """
        Lifecycle state this event asks for.

        The gateway's explicit status wins; the event kind is the fallback.
        """
        explicit = OrderStatus.parse(self.status)
        if explicit is not None:
            return explicit
        return _KIND_TO_STATUS.get(self.kind)

    @classmethod
    def from_payload(
        cls,
        payload: Any,
        channel: Channel,
        event_name: Optional[str] = None,
    ) -> "NotificationEvent":
        """
        Normalize a raw webhook body or stream payload.

        Args:
            payload: Decoded JSON object
            channel: Channel the payload arrived on
            event_name: Event name from transport headers, used when the
                payload has no ``event`` field

        Returns:
            NotificationEvent: Normalized event

        Raises:
            EventNormalizationError: If payload is not a JSON object
        """
        if not isinstance(payload, Mapping):
            raise EventNormalizationError(
                f"Notification payload must be an object, got {type(payload).__name__}"
            )

        raw_name = _to_str(payload.get("event")) or _to_str(event_name)
        kind = EventKind.from_event_name(raw_name)
        if kind is EventKind.UNKNOWN:
            kind = EventKind.from_event_name(_to_str(payload.get("status")))

        metadata: Dict[str, Any] = {}
        nested = payload.get("metadata")
        if isinstance(nested, Mapping):
            metadata.update(nested)
        for key, value in payload.items():
            if key not in _KNOWN_FIELDS:
                metadata[key] = value

        user_id = _to_str(payload.get("user_id")) or _to_str(metadata.get("user_id"))

        return cls(
            kind=kind,
            invoice_id=_to_str(payload.get("invoice_id")) or _to_str(payload.get("id")),
            order_id=(
                _to_str(payload.get("merchant_order_id")) or _to_str(payload.get("order_id"))
            ),
            status=_to_str(payload.get("status")),
            amount_received=_to_decimal(payload.get("amount_received")) or Decimal("0"),
            currency=_to_str(payload.get("currency")),
            usd_amount=_to_decimal(payload.get("usd_amount")),
            fiat_amount=_to_decimal(payload.get("fiat_amount")),
            fiat_currency=_to_str(payload.get("fiat_currency")),
            user_id=user_id,
            metadata=metadata,
            channel=channel,
            event_name=raw_name,
        )
