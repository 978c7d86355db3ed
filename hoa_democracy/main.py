"""FastAPI application entrypoint."""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from hoa_democracy.api.routes import register_routes
from hoa_democracy.core.config import Settings, get_settings
from hoa_democracy.core.logging import configure_logging
from hoa_democracy.db.session import engine
from hoa_democracy.obs import (
    AuditMiddleware,
    PrometheusMiddleware,
    initialise_tracing,
    instrument_fastapi_app,
    metrics_router,
)

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    LOGGER.info(
        "service starting",
        extra={"service": application.title, "database": engine.dialect.name},
    )
    yield
    engine.dispose()
    LOGGER.info("service stopped", extra={"service": application.title})


def create_application(settings: Settings | None = None) -> FastAPI:
    """Application factory used by ASGI servers and tests."""
    configure_logging()
    settings = settings or get_settings()

    if settings.enable_tracing:
        initialise_tracing(service_name=settings.app_name, endpoint=settings.otel_exporter_endpoint)

    application = FastAPI(
        title=settings.app_name,
        version=settings.version,
        description="Community polls recorded on tamper-evident, per-poll hash chains.",
        docs_url=settings.docs_url,
        redoc_url=settings.redoc_url,
        openapi_url=settings.openapi_url,
        lifespan=_lifespan,
    )

    application.add_middleware(AuditMiddleware, settings=settings)
    if settings.enable_metrics:
        application.add_middleware(PrometheusMiddleware)
        application.include_router(metrics_router)
    register_routes(application)

    if settings.enable_tracing:
        instrument_fastapi_app(application)

    return application


app = create_application()
