"""Prometheus metric definitions shared by the API and worker processes."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
bookings_total = Counter(
    "bookings_total",
    "Booking submissions by path (manual_pix or gateway)",
    ["service", "path"],
)
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Payment gateway calls by operation and outcome",
    ["service", "operation", "outcome"],
)
gateway_latency_seconds = Histogram(
    "gateway_latency_seconds",
    "Payment gateway call latency seconds",
    ["service", "operation"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Payment webhook deliveries by outcome",
    ["service", "outcome"],
)
duplicate_webhooks_skipped_total = Counter(
    "duplicate_webhooks_skipped_total",
    "Webhook deliveries whose financial side effects were already applied",
    ["service", "flow"],
)
payments_approved_total = Counter(
    "payments_approved_total",
    "Payments credited exactly once, by payment type",
    ["service", "payment_type"],
)
reconciliation_failures_total = Counter(
    "reconciliation_failures_total",
    "Downstream failures after the payment status write",
    ["service", "flow"],
)
notifications_total = Counter(
    "notifications_total",
    "Notification queue rows by final delivery status",
    ["service", "template_type", "status"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
