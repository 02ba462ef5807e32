"""
Tracer initialization and configuration for OpenTelemetry.

Spans are exported over OTLP only when an endpoint is configured
(argument or ``ANON_OTLP_ENDPOINT``); otherwise the provider has no
exporter and tracing costs next to nothing.
"""

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

logger = logging.getLogger(__name__)

_tracer: trace.Tracer | None = None
_is_initialized = False


def initialize_tracing(
    service_name: str = "pg-dump-anonymizer",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
) -> trace.Tracer:
    """
    Initialize tracing with OpenTelemetry.

    Args:
        service_name: Name of the service for identification
        otlp_endpoint: OTLP collector endpoint (e.g., "localhost:4317")
        console_export: If True, also export traces to stdout (debug)

    Returns:
        Configured tracer instance
    """
    global _tracer, _is_initialized

    if _is_initialized and _tracer is not None:
        logger.debug("Tracing already initialized, returning existing tracer")
        return _tracer

    resource = Resource(attributes={SERVICE_NAME: service_name})
    provider = TracerProvider(resource=resource)

    exporters = []

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("ANON_OTLP_ENDPOINT")

    if otlp_endpoint:
        try:
            otlp_exporter = OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)
            provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
            exporters.append("OTLP")
            logger.info(f"OTLP exporter configured: {otlp_endpoint}")
        except Exception as e:
            logger.warning(f"Failed to configure OTLP exporter: {e}")

    if console_export or os.getenv("ANON_TRACE_CONSOLE", "").lower() == "true":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        exporters.append("Console")

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(service_name)
    _is_initialized = True

    logger.debug(
        f"Tracing initialized: {service_name} "
        f"(exporters: {', '.join(exporters) or 'none'})"
    )

    return _tracer


def get_tracer() -> trace.Tracer:
    """
    Get the global tracer instance, initializing defaults on first use.
    """
    global _tracer

    if _tracer is None:
        _tracer = initialize_tracing()

    return _tracer


def shutdown_tracing() -> None:
    """
    Flush pending spans and shut the provider down.

    Should be called before application exit.
    """
    global _is_initialized

    if _is_initialized:
        try:
            provider = trace.get_tracer_provider()
            if hasattr(provider, 'shutdown'):
                provider.shutdown()
            logger.debug("Tracing shutdown complete")
        except Exception as e:
            logger.error(f"Error during tracing shutdown: {e}")
        finally:
            _is_initialized = False
