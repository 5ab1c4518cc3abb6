"""
OpenTelemetry tracing for the dashboard API.

Inbound requests and SQL statements are instrumented automatically; calls to
the scanning backend get manual spans through ``trace_operation``. Everything
here is a no-op when ``TRACING_ENABLED`` is false.
"""

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from sentinel.config import settings

TRACER_NAME = "sentinel"
SPAN_PREFIX = "sentinel."

# Health checks and scrapes would otherwise dominate the trace volume.
UNTRACED_PATHS = "health,metrics"

_PRIMITIVES = (str, int, float, bool)


def setup_tracing() -> None:
    """Install a tracer provider that batches spans to the OTLP collector."""
    if not settings.tracing_enabled:
        return

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.service_name,
                "service.version": settings.api_version,
                "deployment.site": settings.site_url,
            }
        )
    )
    exporter = OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def instrument_fastapi(app: Any) -> None:
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app, excluded_urls=UNTRACED_PATHS)


def instrument_sqlalchemy(engine: Any) -> None:
    # The instrumentor hooks the sync engine that backs an AsyncEngine.
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    return trace.get_tracer(TRACER_NAME, settings.api_version)


def add_span_attributes(span: Span, **attributes: Any) -> None:
    """Attach attributes under the ``sentinel.`` namespace, skipping None and stringifying the rest."""
    for key, value in attributes.items():
        if value is None:
            continue
        span.set_attribute(
            f"{SPAN_PREFIX}{key}", value if isinstance(value, _PRIMITIVES) else str(value)
        )


def set_span_error(span: Span, error: BaseException) -> None:
    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, f"{type(error).__name__}: {error}"))


class trace_operation:
    """
    Span around one outbound operation.

        with trace_operation("remote_scan", content_type="url") as span:
            response = await client.post(...)

    The span is named ``sentinel.<operation>``. An exception escaping the block
    marks the span as failed and is re-raised unchanged.
    """

    def __init__(self, operation: str, **attributes: Any) -> None:
        self.span_name = f"{SPAN_PREFIX}{operation}"
        self.attributes = attributes
        self._scope: Any = None
        self._span: Span | None = None

    def __enter__(self) -> Span:
        self._scope = get_tracer().start_as_current_span(
            self.span_name, record_exception=False, set_status_on_exception=False
        )
        self._span = self._scope.__enter__()
        add_span_attributes(self._span, **self.attributes)
        return self._span

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if exc_val is not None and self._span is not None:
            set_span_error(self._span, exc_val)
        self._scope.__exit__(exc_type, exc_val, exc_tb)
