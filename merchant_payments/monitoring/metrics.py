"""
Prometheus metrics for payment notification monitoring.

Tracks:
- Notification events by channel and reconciliation outcome
- Balance credits
- Webhook signature failures
- Notification stream state, reconnects and frames
- Gateway API calls
"""
from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
notification_events_total = Counter(
    "notification_events_total",
    "Total notification events applied to the ledger",
    ["channel", "outcome"],  # outcome: applied, credited, duplicate, stale, ...
)

notification_apply_duration_seconds = Histogram(
    "notification_apply_duration_seconds",
    "Time spent applying one notification event",
    ["channel"],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
)

balance_credits_total = Counter(
    "balance_credits_total",
    "Total balance credits (confirmed orders)",
    ["source"],  # usd_amount, received_amount
)

balance_credited_usd_total = Counter(
    "balance_credited_usd_total",
    "Total USD credited to user balances",
)

# Webhook metrics
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook requests received",
    ["event_name", "status"],  # status: accepted, unauthorized, invalid
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Total webhook requests rejected for a bad or missing signature",
)

# Stream metrics
stream_connection_state = Gauge(
    "stream_connection_state",
    "Notification stream state (0=idle, 1=connecting, 2=open, 3=closing, 4=reconnect_scheduled)",
)

stream_reconnects_total = Counter(
    "stream_reconnects_total",
    "Total reconnect attempts scheduled for the notification stream",
)

stream_frames_total = Counter(
    "stream_frames_total",
    "Total frames received on the notification stream",
    ["frame_type"],  # connected, notification, pong, malformed, unknown, ...
)

stream_liveness_timeouts_total = Counter(
    "stream_liveness_timeouts_total",
    "Total connections force-closed because no pong arrived in time",
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API requests",
    ["operation", "status"],
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    _STREAM_STATES = {
        "idle": 0,
        "connecting": 1,
        "open": 2,
        "closing": 3,
        "reconnect_scheduled": 4,
    }

    @staticmethod
    def record_notification(channel: str, outcome: str, duration_seconds: float) -> None:
        """Record one applied notification event."""
        notification_events_total.labels(channel=channel, outcome=outcome).inc()
        notification_apply_duration_seconds.labels(channel=channel).observe(duration_seconds)

    @staticmethod
    def record_balance_credit(source: str, amount_usd: float) -> None:
        """Record a balance credit."""
        balance_credits_total.labels(source=source).inc()
        if amount_usd > 0:
            balance_credited_usd_total.inc(amount_usd)

    @staticmethod
    def record_webhook_request(event_name: str, status: str) -> None:
        """Record a webhook request."""
        webhook_requests_total.labels(event_name=event_name or "unknown", status=status).inc()
        if status == "unauthorized":
            webhook_signature_failures_total.inc()

    @classmethod
    def set_stream_state(cls, state: str) -> None:
        """Set notification stream state."""
        stream_connection_state.set(cls._STREAM_STATES.get(state, 0))

    @staticmethod
    def record_stream_reconnect() -> None:
        """Record a scheduled reconnect."""
        stream_reconnects_total.inc()

    @staticmethod
    def record_stream_frame(frame_type: str) -> None:
        """Record a received stream frame."""
        stream_frames_total.labels(frame_type=frame_type).inc()

    @staticmethod
    def record_stream_liveness_timeout() -> None:
        """Record a liveness-guard forced reconnect."""
        stream_liveness_timeouts_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a gateway API call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(operation=operation).observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
