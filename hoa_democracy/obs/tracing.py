"""OpenTelemetry tracing for the API, the ledger and the integrity CLI."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.trace import Span
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

_SERVICE_NAME_ATTRIBUTE = "service.name"
_TRACER_NAME = "hoa_democracy"
_propagator = TraceContextTextMapPropagator()


def _span_processor(endpoint: str | None) -> SpanProcessor:
    if endpoint:
        return BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
    return SimpleSpanProcessor(ConsoleSpanExporter())


def initialise_tracing(
    *,
    service_name: str,
    endpoint: str | None = None,
    instrument_logging: bool = True,
) -> None:
    """Install a global tracer provider unless one for ``service_name`` is already active."""

    current = trace.get_tracer_provider()
    if isinstance(current, TracerProvider):
        if current.resource.attributes.get(_SERVICE_NAME_ATTRIBUTE) == service_name:
            return

    provider = TracerProvider(resource=Resource(attributes={_SERVICE_NAME_ATTRIBUTE: service_name}))
    provider.add_span_processor(_span_processor(endpoint))
    trace.set_tracer_provider(provider)
    if instrument_logging:
        LoggingInstrumentor().instrument(set_logging_format=True)


def instrument_fastapi_app(app: FastAPI) -> None:
    FastAPIInstrumentor().instrument_app(app)


def instrument_sqlalchemy_engine(engine: Any) -> None:
    SQLAlchemyInstrumentor().instrument(engine=engine)


@contextmanager
def span_from_traceparent(name: str, traceparent: str | None, **attributes: Any) -> Iterator[Span]:
    """Start a span, continuing the trace named by a W3C ``traceparent`` value when given.

    The integrity CLI uses this so a scheduled verification run can be joined
    to the job that launched it.
    """

    context = _propagator.extract(carrier={"traceparent": traceparent}) if traceparent else None
    tracer = trace.get_tracer(_TRACER_NAME)
    with tracer.start_as_current_span(name, context=context) as span:
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def inject_traceparent(headers: dict[str, str]) -> dict[str, str]:
    """Copy ``headers`` and add the current trace context to the copy."""

    carrier: dict[str, str] = dict(headers)
    _propagator.inject(carrier)
    return carrier


__all__ = [
    "initialise_tracing",
    "inject_traceparent",
    "instrument_fastapi_app",
    "instrument_sqlalchemy_engine",
    "span_from_traceparent",
]
