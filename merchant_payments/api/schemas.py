"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CreateInvoiceRequest(BaseModel):
    """Request schema for creating a payment invoice.

    Fields are optional at the schema level so missing input is reported as
    a 400 by the order service rather than a 422.
    """

    user_id: Optional[str] = Field(default=None, description="Merchant-side user identifier")
    amount: Optional[Decimal] = Field(default=None, description="Requested amount in crypto units")
    currency: Optional[str] = Field(default=None, description="Crypto currency code (e.g., USDT)")
    network: Optional[str] = Field(default=None, description="Blockchain network (e.g., tron)")
    description: Optional[str] = Field(default=None, description="Invoice description")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: Optional[str]) -> Optional[str]:
        """Normalize currency code."""
        return v.upper() if v else v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "user_42",
                    "amount": 100,
                    "currency": "USDT",
                    "network": "tron",
                    "description": "Deposit",
                }
            ]
        }
    }


class CheckoutUrlRequest(BaseModel):
    """Request schema for a hosted-checkout URL."""

    user_id: Optional[str] = Field(default=None, description="Merchant-side user identifier")
    fiat_amount: Optional[Decimal] = Field(default=None, description="Amount in fiat currency")
    fiat_currency: Optional[str] = Field(default=None, description="Fiat currency code (e.g., USD)")
    currency: Optional[str] = Field(default=None, description="Crypto currency to pay with")
    network: Optional[str] = Field(default=None, description="Blockchain network")
    description: Optional[str] = Field(default=None, description="Checkout description")


class ApiResponse(BaseModel):
    """Envelope used by every merchant API response."""

    success: bool = Field(default=True, description="Whether the request succeeded")
    data: Any = Field(default=None, description="Response payload")


class WebhookResponse(BaseModel):
    """Response schema for webhook ingestion."""

    received: bool = Field(..., description="Webhook accepted")
    outcome: str = Field(..., description="Reconciliation outcome")
    order_id: Optional[str] = Field(default=None, description="Matched merchant order")
    previous_status: Optional[str] = Field(default=None, description="Status before the event")
    status: Optional[str] = Field(default=None, description="Status after the event")
    credited_amount: Optional[float] = Field(
        default=None, description="USD credited to the user by this event"
    )


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    environment: Optional[str] = Field(default=None, description="Deployment environment")
    message: Optional[str] = Field(default=None, description="Status message")
