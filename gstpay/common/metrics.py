"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_requests_total = Counter("payment_requests_total", "Total payment requests", ["service"])
payment_success_total = Counter("payment_success_total", "Total completed payments", ["service"])
payment_failure_total = Counter("payment_failure_total", "Total failed payments", ["service", "reason"])
payment_latency_seconds = Histogram("payment_latency_seconds", "Payment creation latency seconds", ["service"])
refunds_total = Counter("refunds_total", "Refund attempts by outcome", ["service", "outcome"])
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
gateway_call_seconds = Histogram(
    "gateway_call_seconds",
    "Gateway call duration seconds",
    ["service", "provider", "operation"],
)
gateway_errors_total = Counter(
    "gateway_errors_total",
    "Gateway call failures",
    ["service", "provider", "operation", "error_type"],
)
payment_e2e_seconds = Histogram(
    "payment_e2e_seconds",
    "Payment duration seconds from creation to terminal state",
    ["service", "terminal_state"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook deliveries by event type and outcome",
    ["service", "event_type", "outcome"],
)
duplicate_webhooks_skipped_total = Counter(
    "duplicate_webhooks_skipped_total",
    "Re-delivered webhook events skipped",
    ["service", "provider"],
)
order_sync_failures_total = Counter(
    "order_sync_failures_total",
    "Payment transitions whose paired order update did not apply",
    ["service", "payment_status"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
