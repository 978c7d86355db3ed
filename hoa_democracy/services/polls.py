"""Poll directory: the checks performed before a vote reaches the ledger."""
from __future__ import annotations

import hashlib
import hmac
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hoa_democracy.core.config import Settings, get_settings
from hoa_democracy.models import Poll, PollOption, PollStatus, PollType, VoteRecord
from hoa_democracy.services.audit_events import record_audit_event
from hoa_democracy.services.errors import (
    DuplicateVoteError,
    InvalidOptionError,
    PollClosedError,
    PollConfigurationError,
    PollNotFoundError,
)
from hoa_democracy.services.ledger import VoteLedger, has_voted
from hoa_democracy.services.receipts import Receipt, issue_receipt

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VoteCastResult:
    record: VoteRecord
    receipt: Receipt


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_poll(
    session: Session,
    *,
    title: str,
    options: Sequence[str],
    start_at: datetime,
    end_at: datetime,
    created_by: str,
    description: str | None = None,
    poll_type: PollType = PollType.INFORMAL,
    is_anonymous: bool = False,
    settings: Settings | None = None,
) -> Poll:
    """Create a poll and its options in one transaction."""

    settings = settings or get_settings()
    start_at = _as_utc(start_at)
    end_at = _as_utc(end_at)

    if end_at <= start_at:
        raise PollConfigurationError("End date must be after start date")
    cleaned = [text.strip() for text in options if text and text.strip()]
    if len(cleaned) < 2:
        raise PollConfigurationError("Poll must have at least 2 options")
    if poll_type == PollType.BINDING and not settings.binding_polls_enabled:
        raise PollConfigurationError("Binding polls are currently disabled")

    poll = Poll(
        title=title.strip(),
        description=description,
        type=poll_type,
        is_anonymous=is_anonymous,
        start_at=start_at,
        end_at=end_at,
        created_by=created_by,
    )
    poll.options = [PollOption(text=text, order_index=index) for index, text in enumerate(cleaned)]
    session.add(poll)
    session.flush()
    record_audit_event(
        session,
        actor=created_by,
        action="poll_create",
        resource_type="poll",
        resource_id=poll.id,
        payload={"type": poll_type.value, "option_count": len(cleaned)},
    )
    session.commit()
    session.refresh(poll)

    LOGGER.info("poll created", extra={"poll_id": poll.id, "type": poll_type.value, "created_by": created_by})
    return poll


def get_poll(session: Session, poll_id: int) -> Poll:
    poll = session.get(Poll, poll_id)
    if poll is None:
        raise PollNotFoundError(poll_id)
    return poll


def ensure_open(poll: Poll, *, now: datetime | None = None) -> None:
    status = poll.status_at(now)
    if status == PollStatus.SCHEDULED:
        raise PollClosedError("Poll has not started yet")
    if status == PollStatus.CLOSED:
        raise PollClosedError("Poll has already closed")


def ensure_option(session: Session, poll: Poll, option_id: int) -> PollOption:
    option = session.get(PollOption, option_id)
    if option is None or option.poll_id != poll.id:
        raise InvalidOptionError("Invalid poll option")
    return option


def resolve_voter_token(poll: Poll, subject: str, *, secret: str) -> str:
    """Voter identifier recorded on the chain.

    Named polls record the authenticated subject. Anonymous polls record a
    keyed digest of poll id and subject, stable per voter and poll so the
    one-vote constraint still holds, but unlinkable across polls.
    """

    if not poll.is_anonymous:
        return subject
    message = f"{poll.id}:{subject}".encode("utf-8")
    return "anon-" + hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def cast_vote(
    session: Session,
    *,
    poll_id: int,
    option_id: int,
    subject: str,
    ip_address: str | None = None,
    correlation_id: str | None = None,
    settings: Settings | None = None,
) -> VoteCastResult:
    """Validate against the poll, append to the chain and issue the receipt."""

    settings = settings or get_settings()
    poll = get_poll(session, poll_id)
    ensure_open(poll)
    ensure_option(session, poll, option_id)

    voter_token = resolve_voter_token(poll, subject, secret=settings.voter_token_secret)
    if has_voted(session, poll_id, voter_token):
        raise DuplicateVoteError("User has already voted in this poll")

    record = VoteLedger(session, settings=settings).append_vote(poll_id, option_id, voter_token)
    receipt = issue_receipt(record)

    record_audit_event(
        session,
        actor=None if poll.is_anonymous else subject,
        action="vote_cast",
        resource_type="poll",
        resource_id=poll_id,
        payload={
            "sequence": record.sequence,
            "correlation_id": correlation_id,
        },
        ip_address=ip_address,
    )
    session.commit()

    LOGGER.info(
        "vote cast",
        extra={"poll_id": poll_id, "sequence": record.sequence, "correlation_id": correlation_id},
    )
    return VoteCastResult(record=record, receipt=receipt)


def tally_results(session: Session, poll: Poll) -> dict[int, int]:
    """Vote count per option id, including options with no votes."""

    counts = dict(
        session.execute(
            select(VoteRecord.option_id, func.count(VoteRecord.id))
            .where(VoteRecord.poll_id == poll.id)
            .group_by(VoteRecord.option_id)
        ).all()
    )
    return {option.id: int(counts.get(option.id, 0)) for option in poll.options}


__all__ = [
    "VoteCastResult",
    "cast_vote",
    "create_poll",
    "ensure_open",
    "ensure_option",
    "get_poll",
    "has_voted",
    "resolve_voter_token",
    "tally_results",
]
