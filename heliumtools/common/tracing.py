"""OpenTelemetry setup plus the span wrapper used around order processing steps."""

from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from heliumtools.common.config import settings


def setup_tracing(service_name: str) -> None:
    """Create and register a tracer provider with OTLP HTTP exporter."""

    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Attach FastAPI auto-instrumentation for request spans."""

    if not settings.tracing_enabled:
        return
    FastAPIInstrumentor.instrument_app(app)


tracer = trace.get_tracer("heliumtools")


@contextmanager
def order_step_span(order_id: str, status: str, next_status: str):
    with tracer.start_as_current_span(f"dc_purchase.step.{status}") as span:
        span.set_attribute("order.id", order_id)
        span.set_attribute("order.status", status)
        span.set_attribute("order.next_status", next_status)
        yield span
