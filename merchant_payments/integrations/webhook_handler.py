"""
Gateway webhook handler with signature verification.

Implements:
- HMAC-SHA256 signature verification over the exact body bytes
- Normalization into NotificationEvent
- Hand-off to the reconciliation engine

Deduplication is not tracked per delivery: the engine's transition check makes
redelivered webhooks no-ops.
"""
import json
from typing import Any, Dict, Optional

import structlog

from merchant_payments.core.events import Channel, EventNormalizationError, NotificationEvent
from merchant_payments.core.reconciliation import ReconciliationEngine
from merchant_payments.core.signature import SignatureVerifier
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookError(Exception):
    """Raised when webhook processing fails."""

    pass


class WebhookAuthenticationError(WebhookError):
    """Bad or missing signature. Not retryable."""

    pass


class WebhookPayloadError(WebhookError):
    """Body is not a JSON object."""

    pass


class WebhookHandler:
    """
    Handles gateway webhook pushes.

    The only obligations to the caller: answer quickly after verification
    and ingestion, and reject bad signatures as an authentication failure.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        secret: str,
        verifier: Optional[SignatureVerifier] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            engine: Reconciliation engine receiving the events
            secret: Shared webhook secret
            verifier: Signature verifier (defaults to SignatureVerifier)
        """
        self.engine = engine
        self.secret = secret
        self.verifier = verifier or SignatureVerifier()

        if not secret:
            logger.warning("webhook_secret_missing", detail="all webhooks will be rejected")

    def verify_signature(self, body: bytes, signature: Optional[str]) -> None:
        """
        Verify webhook signature.

        Raises:
            WebhookAuthenticationError: If verification fails
        """
        if not self.verifier.verify(body, signature, self.secret):
            raise WebhookAuthenticationError("Invalid signature")

    async def handle(
        self,
        body: bytes,
        signature: Optional[str],
        event_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Verify, normalize and ingest one webhook delivery.

        Args:
            body: Raw request body
            signature: Value of the signature header
            event_name: Value of the event-name header

        Returns:
            Dict[str, Any]: Acknowledgement with the reconciliation outcome

        Raises:
            WebhookAuthenticationError: Bad or missing signature
            WebhookPayloadError: Body is not a JSON object
        """
        try:
            self.verify_signature(body, signature)
        except WebhookAuthenticationError:
            logger.error("webhook_signature_invalid", event_name=event_name)
            metrics.record_webhook_request(event_name, "unauthorized")
            raise

        try:
            payload = json.loads(body)
            event = NotificationEvent.from_payload(payload, Channel.WEBHOOK, event_name=event_name)
        except (ValueError, EventNormalizationError) as e:
            logger.error("webhook_payload_invalid", event_name=event_name, error=str(e))
            metrics.record_webhook_request(event_name, "invalid")
            raise WebhookPayloadError(f"Invalid webhook payload: {e}") from e

        logger.info(
            "webhook_received",
            event_name=event.event_name,
            invoice_id=event.invoice_id,
            merchant_order_id=event.order_id,
            status=event.status,
        )

        result = await self.engine.apply(event)
        metrics.record_webhook_request(event.event_name, "accepted")

        return {"received": True, **result.to_dict()}
