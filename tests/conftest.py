"""
Pytest configuration and fixtures.
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from merchant_payments.config import Settings
from merchant_payments.core.ledger import PaymentLedger
from merchant_payments.core.models import Order
from merchant_payments.core.reconciliation import ReconciliationEngine
from merchant_payments.core.signature import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        payment_gateway_url="http://gateway.test",
        payment_gateway_api_key="pk_test_key",
        payment_gateway_site_key="site_test_key",
        payment_gateway_webhook_secret=WEBHOOK_SECRET,
        payment_gateway_ws_token="",
        payment_gateway_retry_attempts=3,
        status_poll_interval=0.0,
        app_name="merchant-payments-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def ledger() -> PaymentLedger:
    return PaymentLedger()


@pytest.fixture
def engine(ledger: PaymentLedger) -> ReconciliationEngine:
    return ReconciliationEngine(ledger)


@pytest.fixture
def pending_order(ledger: PaymentLedger) -> Order:
    """Pending 100 USDT order for user U1, bound to invoice inv_1."""
    return ledger.seed_order(
        order_id="O1",
        user_id="U1",
        amount=100,
        currency="USDT",
        network="tron",
        invoice_id="inv_1",
        amount_to_pay="100.000123",
    )


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    """Signature header value for a webhook body."""
    return compute_signature(body, secret)


def webhook_body(**payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


class FakeWebSocket:
    """
    Scripted websocket connection.

    Frames pushed with ``feed`` are yielded by ``async for``; ``close`` (or
    ``drop``) ends the iteration like a real connection closing.
    """

    def __init__(self, auto_pong: bool = False) -> None:
        self.auto_pong = auto_pong
        self.sent: List[Dict[str, Any]] = []
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.closed = False
        self._inbox: "asyncio.Queue[Any]" = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        payload = json.loads(message)
        self.sent.append(payload)
        if self.auto_pong and payload.get("type") == "ping":
            self.feed({"type": "pong"})

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    def feed(self, frame: Any) -> None:
        """Queue a frame; dicts are JSON-encoded, anything else sent raw."""
        self._inbox.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Simulate the server or network closing the connection."""
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(None)

    def sent_types(self) -> List[str]:
        return [message.get("type") for message in self.sent]

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        frame = await self._inbox.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class FakeConnector:
    """
    Connector returning FakeWebSockets, optionally failing the first attempts.
    """

    def __init__(self, failures: int = 0, auto_pong: bool = False) -> None:
        self.auto_pong = auto_pong
        self.failures = failures
        self.urls: List[str] = []
        self.connections: List[FakeWebSocket] = []

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        ws = FakeWebSocket(auto_pong=self.auto_pong)
        self.connections.append(ws)
        return ws

    @property
    def attempts(self) -> int:
        return len(self.urls)

    @property
    def current(self) -> FakeWebSocket:
        return self.connections[-1]


async def wait_for(predicate: Any, timeout: float = 2.0) -> None:
    """Yield to the loop until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
