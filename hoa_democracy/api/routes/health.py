"""Health, readiness and hash chain health endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hoa_democracy.api.deps import get_db_session, get_reporting_service
from hoa_democracy.core.config import get_settings
from hoa_democracy.schemas.poll import HealthSummaryRead
from hoa_democracy.services.errors import PollNotFoundError
from hoa_democracy.services.integrity_reporting import IntegrityReportingService

router = APIRouter()


@router.get("/healthz", summary="Liveness check")
def health_check() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "service": settings.app_name}


@router.get("/readyz", summary="Readiness check")
def readiness_check(session: Session = Depends(get_db_session)) -> dict[str, str]:
    settings = get_settings()
    try:
        session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc
    return {"status": "ready", "service": settings.app_name}


@router.get(
    "/healthz/hashchain/{poll_id}",
    response_model=HealthSummaryRead,
    summary="Hash chain health for one poll",
)
def hashchain_health(
    poll_id: int,
    reporting: IntegrityReportingService = Depends(get_reporting_service),
) -> HealthSummaryRead:
    try:
        summary = reporting.get_health_summary(poll_id)
    except PollNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return HealthSummaryRead.model_validate(summary)


__all__ = ["router"]
