"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Payment Gateway Configuration
    payment_gateway_url: str = Field(
        default="http://localhost:3000", description="Payment gateway base URL"
    )
    payment_gateway_api_key: str = Field(default="", description="Merchant API key")
    payment_gateway_site_key: str = Field(
        default="", description="Site key (required for API integration)"
    )
    payment_gateway_webhook_secret: str = Field(
        default="", description="Shared secret for webhook and checkout signatures"
    )
    payment_gateway_timeout: float = Field(
        default=30.0, description="Gateway HTTP timeout (seconds)"
    )
    payment_gateway_retry_attempts: int = Field(
        default=3, description="Max attempts for transient gateway errors"
    )

    # Notification Stream Configuration
    payment_gateway_ws_token: str = Field(
        default="", description="Websocket authentication token (stream disabled if empty)"
    )
    websocket_path: str = Field(default="/ws/merchant", description="Websocket endpoint path")
    websocket_reconnect_interval: float = Field(
        default=5.0, description="Delay before reconnecting the stream (seconds)"
    )
    websocket_ping_interval: float = Field(
        default=30.0, description="Keepalive ping interval (seconds)"
    )
    websocket_pong_timeout: float = Field(
        default=60.0, description="Force reconnect if no pong within this window (seconds)"
    )

    # Reconciliation
    credit_fallback_to_received_amount: bool = Field(
        default=True,
        description=(
            "Credit the raw received amount as USD when a confirmation carries no "
            "usd_amount (legacy behaviour)"
        ),
    )
    invoice_ttl_seconds: int = Field(default=3600, description="Invoice lifetime (seconds)")
    status_poll_interval: float = Field(
        default=0.0, description="Background status refresh interval, 0 disables (seconds)"
    )
    status_poll_min_age: float = Field(
        default=60.0, description="Only refresh orders untouched for this long (seconds)"
    )

    # Application Configuration
    app_name: str = Field(default="merchant-payments", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    # API Configuration
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=4000, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="CORS allowed origins (comma-separated)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("payment_gateway_url")
    @classmethod
    def validate_gateway_url(cls, v: str) -> str:
        """Gateway URL must be http(s) and carry no trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("payment_gateway_url must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed origins from comma-separated string."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    @property
    def websocket_url(self) -> str:
        """Stream endpoint derived from the gateway URL (http -> ws, https -> wss)."""
        return "ws" + self.payment_gateway_url[len("http"):] + self.websocket_path

    @property
    def stream_enabled(self) -> bool:
        """The notification stream is only used when a token is configured."""
        return bool(self.payment_gateway_ws_token)


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
