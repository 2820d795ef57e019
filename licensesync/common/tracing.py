"""OpenTelemetry setup for the API and the background provisioning loops."""

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from licensesync.common.config import settings


# Worker and reconciler spans have no request to hang off, so they use this tracer.
tracer = trace.get_tracer("licensesync.provisioning")


def setup_tracing(service_name: str) -> None:
    if not settings.tracing_enabled:
        return
    resource = Resource.create({"service.name": service_name, "service.namespace": "licensesync"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    """Request spans for the webhook and license endpoints; health and metrics scrapes are skipped."""

    if not settings.tracing_enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
