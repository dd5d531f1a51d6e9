"""
Websocket client for real-time payment notifications.

Owns the lifecycle of the duplex connection to the gateway:

    idle ──connect()──→ connecting ──handshake ok──→ open
      ↑                     │                         │
      │                handshake failed          drop / error /
      │                     ↓                     pong timeout
      │             reconnect_scheduled ←─────────────┘
      │                     │ fixed delay
      │                     └──→ connecting
      └──── closing ←── disconnect() (from any state)

At most one reconnect task and one keepalive task exist at any time.
Transport problems never escape this class: malformed frames are dropped one
by one and connection failures always lead back to the reconnect path.
"""
import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlencode

import structlog
import websockets

from merchant_payments.config import Settings
from merchant_payments.core.events import Channel, EventNormalizationError, NotificationEvent
from merchant_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NotificationCallback = Callable[[NotificationEvent], Awaitable[Any]]
Connector = Callable[[str], Awaitable[Any]]

NORMAL_CLOSURE = 1000
LIVENESS_TIMEOUT_CLOSURE = 4000


class StreamState(str, Enum):
    """Connection lifecycle states."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    RECONNECT_SCHEDULED = "reconnect_scheduled"


async def websocket_connector(url: str) -> Any:
    """Open a websocket; keepalive is handled at the application level."""
    return await websockets.connect(url, ping_interval=None, open_timeout=10)


async def _invoke(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Call a sync or async hook, logging instead of raising."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.error("stream_callback_failed", callback=getattr(callback, "__name__", None), error=str(e))


class StreamClient:
    """
    Persistent notification stream with keepalive and reconnect.

    Example:
        >>> client = StreamClient(
        ...     url="ws://localhost:3000/ws/merchant",
        ...     token="ws_token",
        ...     on_notification=engine.apply,
        ... )
        >>> await client.connect()
        >>> ...
        >>> await client.disconnect()
    """

    def __init__(
        self,
        url: str,
        token: str,
        on_notification: NotificationCallback,
        on_connect: Optional[Callable[[], Any]] = None,
        on_disconnect: Optional[Callable[[Optional[int], str], Any]] = None,
        reconnect_interval: float = 5.0,
        ping_interval: float = 30.0,
        pong_timeout: Optional[float] = None,
        connector: Optional[Connector] = None,
    ):
        """
        Initialize stream client.

        Args:
            url: Websocket endpoint (token is appended as a query parameter)
            token: Authentication token
            on_notification: Receives every normalized notification
            on_connect: Called after the subscription request is sent
            on_disconnect: Called with (close_code, reason) on every drop
            reconnect_interval: Fixed delay before reconnecting (seconds)
            ping_interval: Keepalive ping interval (seconds)
            pong_timeout: Force reconnect if a ping stays unanswered this
                long (defaults to two ping intervals)
            connector: Coroutine opening the connection (for tests)
        """
        self.url = url
        self.token = token
        self.on_notification = on_notification
        self.on_connect = on_connect
        self.on_disconnect = on_disconnect
        self.reconnect_interval = reconnect_interval
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout if pong_timeout is not None else 2 * ping_interval
        self._connector = connector or websocket_connector

        self._ws: Optional[Any] = None
        self._state = StreamState.IDLE
        self._should_reconnect = False
        # Bumped by disconnect(); stale connect attempts compare against it
        self._generation = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._ping_sent_at: Optional[float] = None

        self.connection_id: Optional[str] = None
        self.last_pong_at: Optional[float] = None
        self.last_round_trip: Optional[float] = None

        self._frame_handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[None]]] = {
            "connected": self._on_connected_frame,
            "subscribed": self._on_subscribed_frame,
            "pong": self._on_pong_frame,
            "notification": self._on_notification_frame,
            "invoice_status": self._on_invoice_status_frame,
            "error": self._on_error_frame,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        on_notification: NotificationCallback,
        connector: Optional[Connector] = None,
    ) -> "StreamClient":
        """Build a client from application settings."""
        return cls(
            url=settings.websocket_url,
            token=settings.payment_gateway_ws_token,
            on_notification=on_notification,
            reconnect_interval=settings.websocket_reconnect_interval,
            ping_interval=settings.websocket_ping_interval,
            pong_timeout=settings.websocket_pong_timeout,
            connector=connector,
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is StreamState.OPEN and self._ws is not None

    @property
    def pending_reconnect(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def status(self) -> Dict[str, Any]:
        """Snapshot for health checks."""
        return {
            "state": self._state.value,
            "connection_id": self.connection_id,
            "pending_reconnect": self.pending_reconnect,
            "awaiting_pong": self._ping_sent_at is not None,
            "last_round_trip_seconds": self.last_round_trip,
        }

    def _set_state(self, state: StreamState) -> None:
        if state is not self._state:
            logger.debug("stream_state_changed", from_state=self._state.value, to_state=state.value)
        self._state = state
        metrics.set_stream_state(state.value)

    def _auth_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the connection and subscribe to all events.

        No-op while already connecting or open. A failed handshake goes
        down the reconnect path instead of raising.

        Returns:
            bool: True if the connection is open
        """
        if self._state in (StreamState.CONNECTING, StreamState.OPEN):
            return self._state is StreamState.OPEN

        current = asyncio.current_task()
        if self._reconnect_task is not None and self._reconnect_task is not current:
            self._reconnect_task.cancel()
            self._reconnect_task = None

        self._should_reconnect = True
        generation = self._generation
        self._set_state(StreamState.CONNECTING)
        logger.info("stream_connecting", url=self.url)

        try:
            ws = await self._connector(self._auth_url())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation != self._generation:
                return False
            logger.error("stream_connect_failed", url=self.url, error=str(e))
            await self._on_connection_lost(None, str(e))
            return False

        if generation != self._generation:
            # disconnect() ran while the handshake was in flight
            await self._close_socket(ws, NORMAL_CLOSURE, "Client disconnect")
            return False

        self._ws = ws
        self._ping_sent_at = None
        self._set_state(StreamState.OPEN)
        logger.info("stream_connected", url=self.url)

        self._reader_task = asyncio.create_task(self._read_loop(ws), name="stream-reader")
        await self.send({"type": "subscribe", "events": ["all"]})
        if ws is not self._ws:
            # Dropped while subscribing; the loss path already ran
            return False

        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws), name="stream-keepalive")
        await _invoke(self.on_connect)
        return True

    async def disconnect(self) -> None:
        """
        Close the connection and stop reconnecting.

        Cancels the reconnect and keepalive tasks deterministically and is
        safe to call in any state, including repeatedly.
        """
        self._should_reconnect = False
        self._generation += 1
        current = asyncio.current_task()

        pending = []
        for task in (self._reconnect_task, self._keepalive_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                pending.append(task)
        self._reconnect_task = None
        self._keepalive_task = None
        self._ping_sent_at = None

        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None

        if ws is not None:
            self._set_state(StreamState.CLOSING)
            await self._close_socket(ws, NORMAL_CLOSURE, "Client disconnect")

        if reader is not None and reader is not current and not reader.done():
            reader.cancel()
            pending.append(reader)

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._set_state(StreamState.IDLE)
        logger.info("stream_disconnected_by_client")

    async def _on_connection_lost(self, code: Optional[int], reason: str) -> None:
        """Common path for every drop: stop keepalive, maybe reconnect."""
        self._stop_keepalive()
        self._ws = None
        self._reader_task = None
        self._ping_sent_at = None

        logger.warning("stream_disconnected", code=code, reason=reason)
        await _invoke(self.on_disconnect, code, reason)

        if self._should_reconnect:
            self._set_state(StreamState.RECONNECT_SCHEDULED)
            self._schedule_reconnect()
        else:
            self._set_state(StreamState.IDLE)

    def _schedule_reconnect(self) -> None:
        """Schedule one reconnect attempt; no-op if one is already pending."""
        if self.pending_reconnect:
            return

        metrics.record_stream_reconnect()
        logger.info("stream_reconnect_scheduled", delay_seconds=self.reconnect_interval)
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after_delay(), name="stream-reconnect"
        )

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_interval)
        self._reconnect_task = None
        if self._should_reconnect:
            await self.connect()

    async def _close_socket(self, ws: Any, code: int, reason: str) -> None:
        try:
            await ws.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("stream_close_error", error=str(e))

    # ------------------------------------------------------------------
    # Keepalive
    # ------------------------------------------------------------------

    def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _keepalive_loop(self, ws: Any) -> None:
        """Ping every interval; force a reconnect when pongs stop coming."""
        loop = asyncio.get_running_loop()
        while ws is self._ws:
            await asyncio.sleep(self.ping_interval)
            if ws is not self._ws:
                return

            if self._ping_sent_at is not None:
                waited = loop.time() - self._ping_sent_at
                if waited >= self.pong_timeout:
                    logger.warning("stream_pong_timeout", waited_seconds=round(waited, 3))
                    metrics.record_stream_liveness_timeout()
                    await self._close_socket(ws, LIVENESS_TIMEOUT_CLOSURE, "Pong timeout")
                    return
            else:
                self._ping_sent_at = loop.time()

            await self.send({"type": "ping"})

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, message: Dict[str, Any]) -> bool:
        """
        Send a JSON message if the connection is open.

        Returns:
            bool: True if the message was handed to the socket
        """
        ws = self._ws
        if ws is None or self._state is not StreamState.OPEN:
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except Exception as e:
            # The reader notices the dead connection and reconnects
            logger.warning("stream_send_failed", message_type=message.get("type"), error=str(e))
            return False

    async def request_invoice_status(self, invoice_id: str) -> bool:
        """Ask the gateway for an invoice's current status (answered as invoice_status)."""
        return await self.send({"type": "get_status", "invoice_id": invoice_id})

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self._handle_frame(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("stream_connection_error", error=str(e))

        if ws is self._ws:
            await self._on_connection_lost(
                getattr(ws, "close_code", None), getattr(ws, "close_reason", None) or ""
            )

    async def _handle_frame(self, raw: Any) -> None:
        """Parse and dispatch one frame. Never raises."""
        if not self._should_reconnect:
            logger.debug("stream_frame_ignored_after_disconnect")
            return

        try:
            if isinstance(raw, (bytes, bytearray)):
                raw = raw.decode("utf-8")
            message = json.loads(raw)
        except ValueError as e:
            logger.warning("stream_frame_malformed", error=str(e))
            metrics.record_stream_frame("malformed")
            return

        if not isinstance(message, dict):
            logger.warning("stream_frame_malformed", error="frame is not an object")
            metrics.record_stream_frame("malformed")
            return

        frame_type = message.get("type")
        handler = self._frame_handlers.get(frame_type) if isinstance(frame_type, str) else None
        if handler is None:
            logger.info("stream_frame_unknown_type", frame_type=frame_type)
            metrics.record_stream_frame("unknown")
            return

        metrics.record_stream_frame(frame_type)
        try:
            await handler(message)
        except Exception as e:
            logger.error("stream_frame_handler_failed", frame_type=frame_type, error=str(e))

    async def _on_connected_frame(self, message: Dict[str, Any]) -> None:
        self.connection_id = message.get("connection_id")
        logger.info("stream_connection_established", connection_id=self.connection_id)

    async def _on_subscribed_frame(self, message: Dict[str, Any]) -> None:
        logger.info("stream_subscribed", events=message.get("events"))

    async def _on_pong_frame(self, message: Dict[str, Any]) -> None:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._ping_sent_at is not None:
            self.last_round_trip = now - self._ping_sent_at
        self._ping_sent_at = None
        self.last_pong_at = now

    async def _on_notification_frame(self, message: Dict[str, Any]) -> None:
        await self._dispatch(message.get("data"), message.get("event"))

    async def _on_invoice_status_frame(self, message: Dict[str, Any]) -> None:
        invoice = message.get("invoice")
        logger.info(
            "stream_invoice_status",
            status=invoice.get("status") if isinstance(invoice, dict) else None,
        )
        await self._dispatch(invoice, None)

    async def _on_error_frame(self, message: Dict[str, Any]) -> None:
        logger.error("stream_server_error", error=message.get("message"))

    async def _dispatch(self, payload: Any, event_name: Optional[str]) -> None:
        """Normalize a payload and forward it to the notification callback."""
        try:
            event = NotificationEvent.from_payload(payload, Channel.STREAM, event_name=event_name)
        except EventNormalizationError as e:
            logger.warning("stream_notification_invalid", error=str(e))
            return

        logger.info(
            "stream_notification",
            event_name=event.event_name,
            invoice_id=event.invoice_id,
            merchant_order_id=event.order_id,
        )
        try:
            await self.on_notification(event)
        except Exception as e:
            logger.error(
                "stream_notification_handler_failed",
                invoice_id=event.invoice_id,
                error=str(e),
            )
