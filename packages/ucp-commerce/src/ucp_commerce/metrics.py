"""Prometheus collectors for the HTTP surface, checkout lifecycle, payments and webhooks."""
from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, Info

from . import __version__

app_info = Info("ucp_app", "UCP commerce server information")
app_info.info({"version": __version__})

# Request metrics
http_requests_total = Counter(
    "ucp_http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "ucp_http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Checkout lifecycle
checkout_sessions_created_total = Counter(
    "ucp_checkout_sessions_created_total",
    "Checkout sessions created",
    ["shop_id"],
)

checkout_sessions_completed_total = Counter(
    "ucp_checkout_sessions_completed_total",
    "Checkout sessions completed with an order",
    ["shop_id"],
)

checkout_sessions_cancelled_total = Counter(
    "ucp_checkout_sessions_cancelled_total",
    "Checkout sessions canceled on request",
    ["shop_id"],
)

checkout_sessions_expired_total = Counter(
    "ucp_checkout_sessions_expired_total",
    "Checkout sessions canceled by lazy expiry",
    ["shop_id"],
)

checkout_duration_seconds = Histogram(
    "ucp_checkout_duration_seconds",
    "Time from session creation to completion",
    ["shop_id"],
    buckets=(10, 30, 60, 120, 300, 600, 1800, 3600),
)

# Payments
payments_processed_total = Counter(
    "ucp_payments_processed_total",
    "Payment handler outcomes",
    ["handler_id", "outcome"],  # handler result status, error, action_completed|action_failed
)

payment_duration_seconds = Histogram(
    "ucp_payment_duration_seconds",
    "Payment handler call duration",
    ["handler_id"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Webhooks
webhooks_received_total = Counter(
    "ucp_webhooks_received_total",
    "Verified backend webhooks received",
    ["event", "shop_id"],
)

webhooks_delivered_total = Counter(
    "ucp_webhooks_delivered_total",
    "Platform webhook delivery attempts",
    ["event", "status"],  # status: success|failed
)

webhook_delivery_duration_seconds = Histogram(
    "ucp_webhook_delivery_duration_seconds",
    "Platform webhook delivery attempt duration",
    ["event"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

webhook_retry_queue_size = Gauge(
    "ucp_webhook_retry_queue_size",
    "Deliveries found due by the last retry sweep",
)


def record_http_request(method: str, endpoint: str, status: int, duration: float) -> None:
    """Record HTTP request metrics."""
    http_requests_total.labels(method=method, endpoint=endpoint, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(max(duration, 0.0))


def record_checkout_created(shop_id: str) -> None:
    checkout_sessions_created_total.labels(shop_id=shop_id).inc()


def record_checkout_completed(shop_id: str, duration_seconds: Optional[float] = None) -> None:
    checkout_sessions_completed_total.labels(shop_id=shop_id).inc()
    if duration_seconds is not None:
        checkout_duration_seconds.labels(shop_id=shop_id).observe(max(duration_seconds, 0.0))


def record_checkout_cancelled(shop_id: str) -> None:
    checkout_sessions_cancelled_total.labels(shop_id=shop_id).inc()


def record_checkout_expired(shop_id: str) -> None:
    checkout_sessions_expired_total.labels(shop_id=shop_id).inc()


def record_payment(handler_id: Optional[str], outcome: str, duration_seconds: Optional[float] = None) -> None:
    """Record one payment handler outcome."""
    handler = handler_id or "unknown"
    payments_processed_total.labels(handler_id=handler, outcome=outcome).inc()
    if duration_seconds is not None:
        payment_duration_seconds.labels(handler_id=handler).observe(max(duration_seconds, 0.0))


def record_webhook_received(event: str, shop_id: str) -> None:
    webhooks_received_total.labels(event=event, shop_id=shop_id).inc()


def record_webhook_delivery(event: str, success: bool, duration_seconds: Optional[float] = None) -> None:
    """Record one outbound delivery attempt."""
    webhooks_delivered_total.labels(event=event, status="success" if success else "failed").inc()
    if duration_seconds is not None:
        webhook_delivery_duration_seconds.labels(event=event).observe(max(duration_seconds, 0.0))


def set_webhook_retry_queue_size(size: int) -> None:
    webhook_retry_queue_size.set(max(int(size), 0))
