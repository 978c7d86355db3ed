"""Poll, vote and hash chain integrity endpoints."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from hoa_democracy.api.deps import client_ip, get_db_session, get_receipt_issuer, get_reporting_service
from hoa_democracy.api.routes.auth import AuthenticatedUser, require_role
from hoa_democracy.core.config import get_settings
from hoa_democracy.models import PollStatus
from hoa_democracy.schemas.poll import (
    IntegrityExport,
    IntegrityReportRead,
    OptionTally,
    PollCreate,
    PollRead,
    PollResults,
    ReceiptRead,
    ReceiptVerification,
    VoteCastRequest,
    VoteCastResponse,
)
from hoa_democracy.services import polls as poll_service
from hoa_democracy.services.audit_events import record_audit_event
from hoa_democracy.services.errors import (
    DuplicateVoteError,
    InvalidInputError,
    NotFoundError,
    PollError,
    SequenceConflictError,
)
from hoa_democracy.services.integrity_reporting import IntegrityReportingService
from hoa_democracy.services.receipts import ReceiptIssuer
from hoa_democracy.services.verifier import IntegrityReport

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/polls")


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except DuplicateVoteError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except SequenceConflictError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="The poll is busy recording another vote, please try again",
            headers={"Retry-After": "1"},
        ) from exc
    except (InvalidInputError, PollError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _report_to_schema(report: IntegrityReport) -> IntegrityReportRead:
    return IntegrityReportRead.model_validate(report.to_dict())


@router.post("", response_model=PollRead, status_code=status.HTTP_201_CREATED)
def create_poll(
    payload: PollCreate,
    session: Session = Depends(get_db_session),
    user: AuthenticatedUser = Depends(require_role("ADMIN")),
) -> PollRead:
    with _translate_errors():
        poll = poll_service.create_poll(
            session,
            title=payload.title,
            description=payload.description,
            options=payload.options,
            start_at=payload.start_at,
            end_at=payload.end_at,
            poll_type=payload.type,
            is_anonymous=payload.is_anonymous,
            created_by=user.email,
        )
    return PollRead.model_validate(poll)


@router.get("/receipts/{receipt_code}", response_model=ReceiptVerification)
def verify_receipt(
    receipt_code: str,
    issuer: ReceiptIssuer = Depends(get_receipt_issuer),
) -> ReceiptVerification:
    """Public receipt lookup. The voter identity is never part of the response."""
    with _translate_errors():
        receipt = issuer.resolve_receipt(receipt_code)
    return ReceiptVerification(**receipt.public_dict(), verified=receipt.verify())


@router.get("/integrity/export", response_model=IntegrityExport)
def export_integrity_reports(
    reporting: IntegrityReportingService = Depends(get_reporting_service),
    _: AuthenticatedUser = Depends(require_role("ADMIN")),
) -> IntegrityExport:
    reports = [_report_to_schema(report) for report in reporting.export_all_chains()]
    LOGGER.info(
        "integrity export generated",
        extra={"polls": len(reports), "broken": sum(1 for report in reports if not report.valid)},
    )
    return IntegrityExport(
        exported_at=datetime.now(timezone.utc),
        total_polls=len(reports),
        all_valid=all(report.valid for report in reports),
        reports=reports,
    )


@router.get("/{poll_id}", response_model=PollRead)
def get_poll(
    poll_id: int,
    session: Session = Depends(get_db_session),
    _: AuthenticatedUser = Depends(require_role("MEMBER", "ADMIN")),
) -> PollRead:
    with _translate_errors():
        poll = poll_service.get_poll(session, poll_id)
    return PollRead.model_validate(poll)


@router.post(
    "/{poll_id}/votes",
    response_model=VoteCastResponse,
    status_code=status.HTTP_201_CREATED,
)
def cast_vote(
    poll_id: int,
    payload: VoteCastRequest,
    request: Request,
    session: Session = Depends(get_db_session),
    user: AuthenticatedUser = Depends(require_role("MEMBER", "ADMIN")),
) -> VoteCastResponse:
    with _translate_errors():
        result = poll_service.cast_vote(
            session,
            poll_id=poll_id,
            option_id=payload.option_id,
            subject=user.email,
            ip_address=client_ip(request),
            correlation_id=getattr(request.state, "request_id", None),
        )
    return VoteCastResponse(receipt=ReceiptRead(**result.receipt.to_dict()))


@router.get("/{poll_id}/results", response_model=PollResults)
def poll_results(
    poll_id: int,
    session: Session = Depends(get_db_session),
    user: AuthenticatedUser = Depends(require_role("MEMBER", "ADMIN")),
) -> PollResults:
    with _translate_errors():
        poll = poll_service.get_poll(session, poll_id)
    poll_status = poll.status
    if poll_status != PollStatus.CLOSED and user.role != "ADMIN":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Results are available once the poll has closed",
        )

    tallies = poll_service.tally_results(session, poll)
    return PollResults(
        poll_id=poll.id,
        status=poll_status,
        total_votes=sum(tallies.values()),
        options=[
            OptionTally(option_id=option.id, text=option.text, votes=tallies[option.id])
            for option in poll.options
        ],
    )


@router.get("/{poll_id}/integrity", response_model=IntegrityReportRead)
def poll_integrity(
    poll_id: int,
    request: Request,
    session: Session = Depends(get_db_session),
    user: AuthenticatedUser = Depends(require_role("ADMIN")),
) -> IntegrityReportRead:
    reporting = IntegrityReportingService(session, settings=get_settings())
    with _translate_errors():
        report = reporting.get_full_report(poll_id)

    record_audit_event(
        session,
        actor=user.email,
        action="integrity_check",
        resource_type="poll",
        resource_id=poll_id,
        payload={"valid": report.valid, "broken_links": report.broken_link_count},
        ip_address=client_ip(request),
    )
    session.commit()
    return _report_to_schema(report)


__all__ = ["router"]
