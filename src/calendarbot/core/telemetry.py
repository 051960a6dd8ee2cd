"""OpenTelemetry setup for calendarbot processes.

Tracing is opt-in: without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the API's global
no-op provider stays in place and spans cost nothing.
"""

from __future__ import annotations

import logging
import os

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "calendarbot"
_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

# Set once this process has installed its SDK provider.
_tracer_provider_installed: bool = False


def _install_provider(service_name: str, endpoint: str) -> None:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)


def init_telemetry(service_name: str = _TRACER_NAME) -> trace.Tracer:
    """Install an OTLP-exporting tracer provider when an endpoint is configured.

    Only the first call with an endpoint installs a provider; later calls and
    calls without an endpoint just return the package tracer.
    """
    global _tracer_provider_installed

    endpoint = os.environ.get(_ENDPOINT_ENV, "").strip()
    if not endpoint:
        logger.debug("%s not set; tracing disabled", _ENDPOINT_ENV)
    elif not _tracer_provider_installed:
        _install_provider(service_name, endpoint)
        _tracer_provider_installed = True
        logger.info("Tracing to %s as %s", endpoint, service_name)
    return get_tracer()


def get_tracer() -> trace.Tracer:
    """Package tracer from the current global provider."""
    return trace.get_tracer(_TRACER_NAME)
