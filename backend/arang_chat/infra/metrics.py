import logging

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.chat_messages = None
            self.chat_feed_suppressed = None
            self.chat_subscriptions = None
            self.chat_feed_subscriptions = None
            self.chat_notifications = None
            self.inbox_refresh_latency = None
            self.http_latency = None
            self.circuit_state = None
            return

        self.chat_messages = Counter(
            "chat_messages_total",
            "Chat message sends by sender type and outcome.",
            ["sender_type", "outcome"],
            registry=self.registry,
        )
        self.chat_feed_suppressed = Counter(
            "chat_feed_suppressed_total",
            "Change-feed message events discarded by dedup rule.",
            ["rule"],
            registry=self.registry,
        )
        self.chat_subscriptions = Gauge(
            "chat_subscriptions_active",
            "Live change-feed subscriptions held by chat rooms and inboxes.",
            ["owner"],
            registry=self.registry,
        )
        self.chat_feed_subscriptions = Gauge(
            "chat_feed_subscriptions",
            "Open subscriptions on the change feed at scrape time.",
            registry=self.registry,
        )
        self.chat_notifications = Counter(
            "chat_notifications_total",
            "Admin notification deliveries by channel and status.",
            ["channel", "status"],
            registry=self.registry,
        )
        self.inbox_refresh_latency = Histogram(
            "chat_inbox_refresh_seconds",
            "Admin inbox aggregation latency in seconds.",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_chat_message(self, sender_type: str, outcome: str) -> None:
        if not self.enabled or self.chat_messages is None:
            return
        self.chat_messages.labels(sender_type=sender_type or "unknown", outcome=outcome).inc()

    def record_feed_suppressed(self, rule: str) -> None:
        if not self.enabled or self.chat_feed_suppressed is None:
            return
        self.chat_feed_suppressed.labels(rule=rule).inc()

    def record_subscription(self, owner: str, delta: int) -> None:
        if not self.enabled or self.chat_subscriptions is None:
            return
        self.chat_subscriptions.labels(owner=owner).inc(delta)

    def set_feed_subscriptions(self, count: int) -> None:
        if not self.enabled or self.chat_feed_subscriptions is None:
            return
        self.chat_feed_subscriptions.set(max(0, count))

    def record_notification(self, channel: str, status: str, count: int = 1) -> None:
        if not self.enabled or self.chat_notifications is None:
            return
        if count <= 0:
            return
        self.chat_notifications.labels(channel=channel, status=status).inc(count)

    def record_inbox_refresh(self, duration_seconds: float) -> None:
        if not self.enabled or self.inbox_refresh_latency is None:
            return
        self.inbox_refresh_latency.observe(max(0.0, float(duration_seconds)))

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, float(duration_seconds))
        )

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
