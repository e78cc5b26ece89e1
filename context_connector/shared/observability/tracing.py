# OpenTelemetry tracing setup

from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from ... import __version__
from ..config import Settings
from .logging import get_logger

logger = get_logger(__name__)


def setup_tracing(settings: Settings) -> TracerProvider:
    """
    Setup OpenTelemetry tracing for the engine process.

    A provider is always installed so spans are recorded even without an
    exporter; OTEL_EXPORTER_OTLP_ENDPOINT adds an OTLP/HTTP exporter.

    Args:
        settings: Application settings

    Returns:
        The installed TracerProvider
    """
    logger.info(
        "Setting up OpenTelemetry tracing",
        endpoint=settings.otel_exporter_otlp_endpoint or "in-memory",
        service=settings.otel_service_name,
    )

    resource = Resource.create(
        {
            SERVICE_NAME: settings.otel_service_name,
            SERVICE_VERSION: __version__,
            "deployment.environment": settings.env,
        }
    )
    provider = TracerProvider(resource=resource)

    endpoint: Optional[str] = settings.otel_exporter_otlp_endpoint
    if endpoint:
        exporter = OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces")
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info("OTLP trace exporter configured", endpoint=endpoint)
    else:
        logger.info("OpenTelemetry tracing enabled (in-memory, no exporter)")

    trace.set_tracer_provider(provider)
    return provider


def get_tracer(name: str):
    """Get a tracer instance"""
    return trace.get_tracer(name)
