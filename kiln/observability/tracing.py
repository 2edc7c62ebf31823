"""
OpenTelemetry tracing for Kiln processes.

Spans cover the task lifecycle (submit, claim, execute, ack); PyMongo
instrumentation adds a child span for every storage command underneath.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.pymongo import PymongoInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Tracer

from kiln.config import get_settings
from kiln.constants import VERSION

logger = logging.getLogger(__name__)

_tracer: Tracer | None = None


def setup_tracing(process: str, enable_console_export: bool = False) -> Tracer:
    """
    Install a tracer provider exporting over OTLP and instrument PyMongo.

    Args:
        process: Role of this process, recorded as ``kiln.process``.
        enable_console_export: Also print finished spans to stdout.
    """
    global _tracer

    settings = get_settings()
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": VERSION,
                "kiln.process": process,
                "db.name": settings.mongodb_database,
            }
        )
    )

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
    except Exception as e:
        logger.warning(f"OTLP exporter unavailable: {e}")

    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)

    instrumentor = PymongoInstrumentor()
    if not instrumentor.is_instrumented_by_opentelemetry:
        instrumentor.instrument()

    _tracer = trace.get_tracer("kiln", VERSION)
    return _tracer


def instrument_fastapi(app: Any) -> None:
    """Trace every API request."""
    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,live,ready,metrics")


def get_tracer() -> Tracer:
    """The process tracer, or the global one when tracing was never set up."""
    return _tracer or trace.get_tracer("kiln")


@contextmanager
def task_span(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a lifecycle span with the given attributes.

    Attributes that are None are left out; the rest are stored as strings
    unless they are already numbers or booleans.
    """
    with get_tracer().start_as_current_span(name) as span:
        for key, value in attributes.items():
            if value is None:
                continue
            span.set_attribute(key, value if isinstance(value, int | float | bool) else str(value))
        yield span
