"""Prometheus metric definitions for the payment service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "STK push initiation requests by outcome",
    ["service", "outcome"],
)
stk_push_latency_seconds = Histogram(
    "stk_push_latency_seconds",
    "Gateway round-trip latency for STK push initiation",
    ["service"],
)
callbacks_received_total = Counter(
    "callbacks_received_total",
    "Vendor callbacks received by outcome",
    ["service", "outcome"],
)
intent_transitions_total = Counter(
    "intent_transitions_total",
    "Payment intent transitions by target state and whether they were applied",
    ["service", "to_state", "applied"],
)
status_queries_total = Counter(
    "status_queries_total",
    "Status polls served by observed status",
    ["service", "status"],
)
payment_confirmation_seconds = Histogram(
    "payment_confirmation_seconds",
    "Seconds from intent creation to terminal callback",
    ["service", "terminal_state"],
)
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
