"""OpenTelemetry spans around ticks, rollbacks and promotions."""
import os
from enum import Enum
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.trace import Status, StatusCode
from loguru import logger

from src.rollout.core.config import Settings

DISABLED_ENDPOINTS = ("", "none")


def setup_tracing(settings: Settings) -> Optional[TracerProvider]:
    """Install an OTLP-exporting tracer provider for this run.

    Export is opt-in: without OTEL_EXPORTER_OTLP_ENDPOINT (or with it set
    to ``none``) the API's no-op tracer stays in place.

    Returns:
        The installed provider, to be shut down when the command ends, or
        None when tracing is disabled
    """
    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "").strip()
    if endpoint.lower() in DISABLED_ENDPOINTS:
        logger.debug("Tracing export disabled")
        return None

    provider = TracerProvider(
        resource=Resource.create({
            "service.name": settings.PROJECT_NAME,
            "service.version": settings.VERSION,
            "deployment.environment": settings.ENV,
        })
    )
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    logger.info(f"✅ Tracing configured: exporting to {endpoint}")
    return provider


def shutdown_tracing(provider: Optional[TracerProvider]) -> None:
    """Flush pending spans before the process exits."""
    if provider is not None:
        provider.shutdown()


# Proxy tracer; resolves to the provider once setup_tracing installs one
tracer = trace.get_tracer("src.rollout")


def set_span_attributes(span, **attributes):
    """Set attributes on a recording span, skipping None and unwrapping enums."""
    if not (span and span.is_recording()):
        return
    for key, value in attributes.items():
        if value is None:
            continue
        span.set_attribute(key, value.value if isinstance(value, Enum) else value)


def record_exception(span, exception: Exception):
    if span and span.is_recording():
        span.record_exception(exception)
        span.set_status(Status(StatusCode.ERROR, str(exception)))
