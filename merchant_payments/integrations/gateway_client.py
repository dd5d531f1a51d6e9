"""
Payment gateway API client with retry logic and error classification.

Implements:
- Invoice creation, lookup, listing and cancellation
- Signed hosted-checkout URLs
- Exponential backoff for transient errors
"""
import time
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from merchant_payments.config import Settings, get_settings
from merchant_payments.core.signature import compute_signature
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these


class GatewayError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        retry_safe: bool = True,
    ):
        """
        Initialize gateway error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status from the gateway, if any
            payload: Decoded error body, if any
            retry_safe: False when the request may have reached the gateway
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.payload = payload or {}
        self.retry_safe = retry_safe


def _should_retry(error: BaseException) -> bool:
    return (
        isinstance(error, GatewayError)
        and error.error_type is GatewayErrorType.TRANSIENT
        and error.retry_safe
    )


class GatewayClient:
    """
    Async client for the upstream payment gateway.

    Every request carries ``X-API-Key`` (merchant identity) and
    ``X-Site-Key`` (required for API integration).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_wait_multiplier: float = 0.5,
    ) -> None:
        """
        Initialize gateway client.

        Args:
            settings: Application settings (defaults to get_settings())
            http_client: Optional preconfigured httpx client
            retry_wait_multiplier: Backoff multiplier in seconds
        """
        self.settings = settings or get_settings()
        self.base_url = self.settings.payment_gateway_url
        self.site_key = self.settings.payment_gateway_site_key
        self.secret = self.settings.payment_gateway_webhook_secret
        self.retry_wait_multiplier = retry_wait_multiplier

        if not self.site_key:
            logger.warning("gateway_site_key_missing")

        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.settings.payment_gateway_timeout,
            headers={
                "Content-Type": "application/json",
                "X-API-Key": self.settings.payment_gateway_api_key,
                "X-Site-Key": self.site_key,
            },
        )

        logger.info("gateway_client_initialized", base_url=self.base_url)

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """Single HTTP round trip with error classification."""
        start_time = time.perf_counter()
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.ConnectError as e:
            metrics.record_gateway_call(operation, "connect_error", time.perf_counter() - start_time)
            raise GatewayError(f"Gateway unreachable: {e}", GatewayErrorType.TRANSIENT)
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(operation, "timeout", time.perf_counter() - start_time)
            raise GatewayError(
                f"Gateway timeout: {e}", GatewayErrorType.TRANSIENT, retry_safe=idempotent
            )
        except httpx.HTTPError as e:
            metrics.record_gateway_call(operation, "error", time.perf_counter() - start_time)
            raise GatewayError(
                f"Gateway request failed: {e}", GatewayErrorType.TRANSIENT, retry_safe=idempotent
            )

        duration = time.perf_counter() - start_time
        metrics.record_gateway_call(operation, str(response.status_code), duration)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.status_code >= 500:
            raise GatewayError(
                body.get("error") or f"Gateway error {response.status_code}",
                GatewayErrorType.TRANSIENT,
                status_code=response.status_code,
                payload=body,
                retry_safe=idempotent,
            )
        if response.status_code >= 400:
            raise GatewayError(
                body.get("error") or f"Gateway rejected request ({response.status_code})",
                GatewayErrorType.PERMANENT,
                status_code=response.status_code,
                payload=body,
            )
        return body

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """
        Perform a request, retrying transient failures with exponential backoff.

        Non-idempotent requests are only retried when they provably never
        reached the gateway (connection refused).

        Raises:
            GatewayError: On permanent errors or when retries are exhausted
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_should_retry),
            stop=stop_after_attempt(max(1, self.settings.payment_gateway_retry_attempts)),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=8),
            reraise=True,
        ):
            with attempt:
                try:
                    return await self._send(operation, method, path, params, json, idempotent)
                except GatewayError as e:
                    logger.warning(
                        "gateway_request_failed",
                        operation=operation,
                        error_type=e.error_type.value,
                        status_code=e.status_code,
                        error=str(e),
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise
        raise GatewayError("Gateway request not attempted", GatewayErrorType.TRANSIENT)

    async def create_invoice(
        self,
        amount: float,
        currency: str,
        network: str,
        order_id: str,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create an invoice for a merchant order.

        Returns:
            Dict[str, Any]: Invoice data (invoice_id, address, amount_to_pay,
            payment_id, expires_at, ...)
        """
        logger.info(
            "creating_invoice",
            order_id=order_id,
            amount=amount,
            currency=currency,
            network=network,
        )
        payload: Dict[str, Any] = {
            "amount": amount,
            "currency": currency,
            "network": network,
            "merchant_order_id": order_id,
            "description": description,
            "metadata": metadata,
        }
        if callback_url:
            payload["callback_url"] = callback_url
        if expires_in:
            payload["expires_in"] = expires_in

        body = await self._request(
            "create_invoice", "POST", "/api/v1/invoices", json=payload, idempotent=False
        )
        invoice = body.get("data") or {}
        logger.info(
            "invoice_created",
            order_id=order_id,
            invoice_id=invoice.get("invoice_id"),
            amount_to_pay=invoice.get("amount_to_pay"),
        )
        return invoice

    async def get_invoice_status(self, invoice_id: str) -> Dict[str, Any]:
        """Current invoice status (``data`` section)."""
        body = await self._request("get_invoice_status", "GET", f"/api/v1/invoices/{invoice_id}")
        return body.get("data") or {}

    async def get_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Full invoice response body."""
        return await self._request("get_invoice", "GET", f"/api/v1/invoices/{invoice_id}")

    async def get_invoices(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Invoice list with filters, stats and pagination.

        Supported filters: status, network, currency, user_id, user_ids,
        date_from, date_to, limit, offset, sort, order.
        """
        return await self._request("get_invoices", "GET", "/api/v1/invoices", params=params or {})

    async def get_invoice_stats(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Aggregate invoice statistics for the given filters."""
        query = dict(params or {})
        query["limit"] = 1
        body = await self._request("get_invoice_stats", "GET", "/api/v1/invoices", params=query)
        return body.get("stats") or {}

    async def cancel_invoice(self, invoice_id: str) -> Dict[str, Any]:
        """Cancel a pending invoice."""
        logger.info("cancelling_invoice", invoice_id=invoice_id)
        return await self._request(
            "cancel_invoice",
            "POST",
            f"/api/v1/invoices/{invoice_id}/cancel",
            idempotent=False,
        )

    def create_checkout_url(
        self,
        user_id: str,
        fiat_amount: float,
        fiat_currency: str,
        currency: str,
        network: str,
        order_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> str:
        """
        Build a signed hosted-checkout URL.

        Fiat to crypto conversion happens on the gateway side; the merchant
        only passes the fiat amount and the desired coin/network.

        Raises:
            ValueError: If user_id is missing
        """
        if not user_id:
            raise ValueError("user_id is required for checkout URL")

        sign_data = ":".join(
            [
                self.site_key,
                str(user_id),
                _format_amount(fiat_amount),
                fiat_currency,
                currency,
                network,
                order_id or "",
            ]
        )
        signature = compute_signature(sign_data, self.secret)

        query: Dict[str, str] = {
            "site_key": self.site_key,
            "user_id": str(user_id),
            "fiat_amount": _format_amount(fiat_amount),
            "fiat_currency": fiat_currency,
            "currency": currency,
            "network": network,
            "signature": signature,
        }
        if order_id:
            query["order_id"] = order_id
        if description:
            query["description"] = description

        return f"{self.base_url}/checkout/pay?{urlencode(query)}"

    async def ping(self) -> bool:
        """Cheap reachability probe used by health checks."""
        try:
            await self._send("ping", "GET", "/api/v1/networks")
            return True
        except GatewayError as e:
            return e.status_code is not None and e.status_code < 500

    async def close(self) -> None:
        """Close the HTTP connection pool."""
        await self._client.aclose()


def _format_amount(value: float) -> str:
    """Render like JavaScript's Number#toString: 100 not 100.0."""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return repr(number)
