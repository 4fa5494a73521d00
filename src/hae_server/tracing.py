"""OpenTelemetry tracing for the ingest and query API."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING

import structlog
from opentelemetry import propagate, trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from . import __version__
from .config import TracingSettings

if TYPE_CHECKING:
    from .ingest import IngestionOutcome

logger = structlog.get_logger(__name__)
tracer = trace.get_tracer(__name__)

DB_SYSTEM = "mongodb"


def span_exporter(name: str) -> SpanExporter | None:
    """Return the exporter for a validated exporter name, or None for "none"."""
    if name == "console":
        return ConsoleSpanExporter()
    if name == "otlp":
        # Endpoint and headers come from the standard OTEL_EXPORTER_OTLP_* variables
        return OTLPSpanExporter()
    return None


def build_tracer_provider(settings: TracingSettings) -> TracerProvider | None:
    """Build a tracer provider describing this service, or None when tracing is off."""
    if not settings.enabled:
        return None
    exporter = span_exporter(settings.exporter)
    if exporter is None:
        return None

    resource = Resource.create(
        {
            SERVICE_NAME: settings.service_name,
            SERVICE_VERSION: __version__,
            "db.system": DB_SYSTEM,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_tracing(settings: TracingSettings) -> TracerProvider | None:
    """Install the global tracer provider.

    Spans are always created through the global API; until a provider is
    installed they are no-ops.

    Returns:
        The installed provider, so the caller can flush it on shutdown, or
        None when tracing is disabled.
    """
    provider = build_tracer_provider(settings)
    if provider is None:
        logger.info("tracing_disabled", exporter=settings.exporter, enabled=settings.enabled)
        return None

    trace.set_tracer_provider(provider)
    logger.info(
        "tracing_configured",
        exporter=settings.exporter,
        service_name=settings.service_name,
    )
    return provider


def extract_trace_context(headers: Mapping[str, str] | None) -> Context | None:
    """Extract an upstream trace context from request headers."""
    if not headers:
        return None
    return propagate.extract(headers)


@contextmanager
def request_span(method: str, route: str, headers: Mapping[str, str] | None) -> Iterator[Span]:
    """Open a server span for one API request, continuing the caller's trace."""
    with tracer.start_as_current_span(
        f"{method} {route}",
        context=extract_trace_context(headers),
        kind=SpanKind.SERVER,
        attributes={"http.method": method, "http.route": route},
    ) as span:
        yield span


def record_ingest_outcome(span: Span, outcome: IngestionOutcome) -> None:
    """Attach the per-group ingest result to a request span."""
    span.set_attribute("http.status_code", outcome.status_code)
    span.set_attribute("ingest.outcome", outcome.outcome_class.value)
    for group, result in outcome.groups.items():
        span.set_attribute(f"ingest.{group}.success", result.success)
        if result.error:
            span.set_attribute(f"ingest.{group}.error", result.error)
    if outcome.status_code >= 500:
        span.set_status(Status(StatusCode.ERROR, "all record groups failed"))
