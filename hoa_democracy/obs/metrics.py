"""Prometheus metrics for the API and the vote ledger."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable

from fastapi import APIRouter, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_LATENCY_SECONDS = Histogram(
    "http_request_latency_seconds",
    "Latency of HTTP requests in seconds.",
    labelnames=("method", "path"),
)
REQUEST_COUNTER = Counter(
    "http_requests_total",
    "Total number of HTTP requests processed.",
    labelnames=("method", "path", "status"),
)
REQUEST_ERROR_COUNTER = Counter(
    "http_request_errors_total",
    "Total number of HTTP requests that resulted in server errors.",
    labelnames=("method", "path", "status"),
)
LEDGER_APPEND_COUNTER = Counter(
    "vote_ledger_appends_total",
    "Vote records appended to poll hash chains.",
)
LEDGER_CONFLICT_COUNTER = Counter(
    "vote_ledger_conflicts_total",
    "Vote appends rejected because a concurrent append held the poll.",
)
CHAIN_VERIFICATION_COUNTER = Counter(
    "vote_chain_verifications_total",
    "Hash chain verifications performed, by outcome.",
    labelnames=("result",),
)
CHAIN_BROKEN_LINKS_GAUGE = Gauge(
    "vote_chain_broken_links",
    "Broken links found by the most recent verification of a poll's chain.",
    labelnames=("poll_id",),
)


def _route_label(request: Request) -> str:
    """Full route template of the matched route, or the raw path before routing.

    Templates keep receipt codes and poll ids out of label values. Routers may
    report the template relative to their own prefix, so the prefix is taken
    from the leading segments of the concrete path.
    """
    path = request.url.path
    template = getattr(request.scope.get("route"), "path", None)
    if not template:
        return path
    depth = path.rstrip("/").count("/") - template.rstrip("/").count("/")
    if depth <= 0:
        return template
    return "/".join(path.split("/")[: depth + 1]) + template


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware that records request metrics for Prometheus scraping."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        method = request.method
        path = _route_label(request)
        start_time = time.perf_counter()
        status = "500"

        try:
            response = await call_next(request)
            path = _route_label(request)
            status = str(response.status_code)
            if response.status_code >= 500:
                REQUEST_ERROR_COUNTER.labels(method=method, path=path, status=status).inc()
            return response
        except Exception:
            REQUEST_ERROR_COUNTER.labels(method=method, path=path, status="500").inc()
            raise
        finally:
            latency = time.perf_counter() - start_time
            REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(latency)
            REQUEST_COUNTER.labels(method=method, path=path, status=status).inc()


metrics_router = APIRouter(tags=["observability"])


@metrics_router.get("/metrics", include_in_schema=False)
def metrics_endpoint() -> Response:
    """Expose Prometheus metrics for scraping."""
    payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


def record_chain_verification(poll_id: int, *, valid: bool, broken_links: int) -> None:
    """Count a verification outcome and publish the poll's broken link total."""
    CHAIN_VERIFICATION_COUNTER.labels(result="valid" if valid else "broken").inc()
    CHAIN_BROKEN_LINKS_GAUGE.labels(poll_id=str(poll_id)).set(broken_links)


__all__ = [
    "CHAIN_BROKEN_LINKS_GAUGE",
    "CHAIN_VERIFICATION_COUNTER",
    "LEDGER_APPEND_COUNTER",
    "LEDGER_CONFLICT_COUNTER",
    "PrometheusMiddleware",
    "REQUEST_COUNTER",
    "REQUEST_ERROR_COUNTER",
    "REQUEST_LATENCY_SECONDS",
    "metrics_endpoint",
    "metrics_router",
    "record_chain_verification",
]
