"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    ApiResponse,
    CheckoutUrlRequest,
    CreateInvoiceRequest,
    WebhookResponse,
)

__all__ = [
    "create_app",
    "ApiResponse",
    "CheckoutUrlRequest",
    "CreateInvoiceRequest",
    "WebhookResponse",
]
