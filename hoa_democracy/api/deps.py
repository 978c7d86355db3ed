"""Common dependencies for API routes."""
from __future__ import annotations

from collections.abc import Iterator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from hoa_democracy.db.session import SessionLocal
from hoa_democracy.services.integrity_reporting import IntegrityReportingService
from hoa_democracy.services.receipts import ReceiptIssuer


def get_db_session() -> Iterator[Session]:
    """Yield a database session for FastAPI dependencies."""

    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_reporting_service(session: Session = Depends(get_db_session)) -> IntegrityReportingService:
    return IntegrityReportingService(session)


def get_receipt_issuer(session: Session = Depends(get_db_session)) -> ReceiptIssuer:
    return ReceiptIssuer(session)


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


__all__ = ["client_ip", "get_db_session", "get_receipt_issuer", "get_reporting_service"]
