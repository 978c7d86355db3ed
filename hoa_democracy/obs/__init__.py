"""Observability utilities."""

from .audit import AuditLogRecord, AuditMiddleware
from .metrics import (
    CHAIN_BROKEN_LINKS_GAUGE,
    CHAIN_VERIFICATION_COUNTER,
    LEDGER_APPEND_COUNTER,
    LEDGER_CONFLICT_COUNTER,
    REQUEST_COUNTER,
    REQUEST_ERROR_COUNTER,
    REQUEST_LATENCY_SECONDS,
    PrometheusMiddleware,
    metrics_router,
    record_chain_verification,
)
from .tracing import (
    initialise_tracing,
    inject_traceparent,
    instrument_fastapi_app,
    instrument_sqlalchemy_engine,
    span_from_traceparent,
)

__all__ = [
    "AuditLogRecord",
    "AuditMiddleware",
    "CHAIN_BROKEN_LINKS_GAUGE",
    "CHAIN_VERIFICATION_COUNTER",
    "LEDGER_APPEND_COUNTER",
    "LEDGER_CONFLICT_COUNTER",
    "PrometheusMiddleware",
    "REQUEST_COUNTER",
    "REQUEST_ERROR_COUNTER",
    "REQUEST_LATENCY_SECONDS",
    "metrics_router",
    "record_chain_verification",
    "initialise_tracing",
    "inject_traceparent",
    "instrument_fastapi_app",
    "instrument_sqlalchemy_engine",
    "span_from_traceparent",
]
