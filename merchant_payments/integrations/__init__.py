"""External integrations for the payment gateway."""
from .gateway_client import GatewayClient, GatewayError
from .stream_client import StreamClient, StreamState
from .webhook_handler import WebhookHandler

__all__ = ["GatewayClient", "GatewayError", "StreamClient", "StreamState", "WebhookHandler"]
