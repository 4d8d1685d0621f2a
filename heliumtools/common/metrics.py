"""Prometheus metric definitions for the DC purchase service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


orders_created_total = Counter("dc_orders_created_total", "Total DC purchase orders created", ["service"])
order_steps_total = Counter(
    "dc_order_steps_total",
    "Processor transitions attempted, by source status and result",
    ["service", "step", "result"],
)
order_step_duration_seconds = Histogram(
    "dc_order_step_duration_seconds",
    "Duration of one processor transition including chain calls",
    ["service", "step"],
)
order_e2e_seconds = Histogram(
    "dc_order_e2e_seconds",
    "Order end-to-end duration seconds from creation to complete",
    ["service"],
)
webhook_requests_total = Counter(
    "dc_webhook_requests_total",
    "Inbound onramp webhooks by outcome",
    ["service", "result"],
)
reconciliation_orders_total = Counter(
    "dc_reconciliation_orders_total",
    "Orders re-driven by the reconciliation sweep",
    ["service", "result"],
)
swap_attempts_total = Counter("dc_swap_attempts_total", "Swap attempts by result", ["service", "result"])
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
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
