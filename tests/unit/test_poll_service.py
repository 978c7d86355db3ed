from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from hoa_democracy.core.config import get_settings
from hoa_democracy.models import AuditLog, PollStatus, PollType
from hoa_democracy.services.errors import (
    DuplicateVoteError,
    InvalidOptionError,
    PollClosedError,
    PollConfigurationError,
    PollNotFoundError,
)
from hoa_democracy.services.polls import (
    cast_vote,
    create_poll,
    ensure_open,
    get_poll,
    resolve_voter_token,
    tally_results,
)
from hoa_democracy.services.verifier import ChainVerifier


def _window() -> tuple[datetime, datetime]:
    now = datetime.now(timezone.utc)
    return now - timedelta(hours=1), now + timedelta(days=1)


def test_create_poll_stores_ordered_options_and_audits(db_session: Session) -> None:
    start_at, end_at = _window()

    poll = create_poll(
        db_session,
        title="  Gate code rotation  ",
        options=["Monthly", " ", "Quarterly", "Never"],
        start_at=start_at,
        end_at=end_at,
        created_by="admin@example.com",
    )

    assert poll.title == "Gate code rotation"
    assert [option.text for option in poll.options] == ["Monthly", "Quarterly", "Never"]
    assert [option.order_index for option in poll.options] == [0, 1, 2]
    assert poll.status == PollStatus.ACTIVE
    entry = db_session.scalars(select(AuditLog).where(AuditLog.action == "poll_create")).one()
    assert entry.resource_id == str(poll.id)


@pytest.mark.parametrize(
    ("options", "offset", "message"),
    [
        (["Only one"], timedelta(days=1), "at least 2 options"),
        (["Yes", "No"], timedelta(0), "End date must be after start date"),
        (["Yes", "No"], timedelta(hours=-2), "End date must be after start date"),
    ],
)
def test_create_poll_validation(db_session: Session, options: list[str], offset: timedelta, message: str) -> None:
    start_at = datetime.now(timezone.utc)

    with pytest.raises(PollConfigurationError, match=message):
        create_poll(
            db_session,
            title="Invalid",
            options=options,
            start_at=start_at,
            end_at=start_at + offset,
            created_by="admin@example.com",
        )


def test_binding_polls_require_feature_flag(db_session: Session) -> None:
    start_at, end_at = _window()
    kwargs = dict(
        title="Special assessment",
        options=["Approve", "Reject"],
        start_at=start_at,
        end_at=end_at,
        created_by="admin@example.com",
        poll_type=PollType.BINDING,
    )

    with pytest.raises(PollConfigurationError, match="disabled"):
        create_poll(db_session, **kwargs)

    enabled = get_settings().model_copy(update={"binding_polls_enabled": True})
    poll = create_poll(db_session, settings=enabled, **kwargs)
    assert poll.type == PollType.BINDING


def test_status_follows_voting_window(make_poll) -> None:  # type: ignore[no-untyped-def]
    scheduled = make_poll(start_offset=timedelta(hours=1), end_offset=timedelta(days=1))
    closed = make_poll(start_offset=timedelta(days=-2), end_offset=timedelta(days=-1))

    assert scheduled.status == PollStatus.SCHEDULED
    assert closed.status == PollStatus.CLOSED
    with pytest.raises(PollClosedError, match="not started"):
        ensure_open(scheduled)
    with pytest.raises(PollClosedError, match="already closed"):
        ensure_open(closed)


def test_cast_vote_appends_and_issues_receipt(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()

    result = cast_vote(
        db_session,
        poll_id=poll.id,
        option_id=poll.options[2].id,
        subject="alice@example.com",
        ip_address="10.0.0.8",
        correlation_id="req-1",
    )

    assert result.record.sequence == 0
    assert result.receipt.receipt_code == result.record.receipt_code
    assert result.receipt.voter_token == "alice@example.com"
    entry = db_session.scalars(select(AuditLog).where(AuditLog.action == "vote_cast")).one()
    assert entry.actor == "alice@example.com"
    assert entry.ip_address == "10.0.0.8"
    assert entry.payload["sequence"] == 0


def test_cast_vote_rejections(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()
    foreign = make_poll(title="Other poll")
    closed = make_poll(start_offset=timedelta(days=-3), end_offset=timedelta(days=-1))
    cast_vote(db_session, poll_id=poll.id, option_id=poll.options[0].id, subject="alice@example.com")

    with pytest.raises(DuplicateVoteError):
        cast_vote(db_session, poll_id=poll.id, option_id=poll.options[1].id, subject="alice@example.com")
    with pytest.raises(InvalidOptionError):
        cast_vote(db_session, poll_id=poll.id, option_id=foreign.options[0].id, subject="bob@example.com")
    with pytest.raises(PollClosedError):
        cast_vote(db_session, poll_id=closed.id, option_id=closed.options[0].id, subject="bob@example.com")
    with pytest.raises(PollNotFoundError):
        cast_vote(db_session, poll_id=9999, option_id=1, subject="bob@example.com")

    assert ChainVerifier(db_session).verify_chain(poll.id).total_votes == 1


def test_anonymous_polls_record_keyed_tokens(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    first = make_poll(is_anonymous=True)
    second = make_poll(is_anonymous=True, title="Second")

    result = cast_vote(db_session, poll_id=first.id, option_id=first.options[0].id, subject="alice@example.com")
    other = resolve_voter_token(second, "alice@example.com", secret=get_settings().voter_token_secret)

    assert result.record.voter_token.startswith("anon-")
    assert "alice" not in result.record.voter_token
    assert result.record.voter_token != other
    assert result.record.voter_token == resolve_voter_token(
        first, "alice@example.com", secret=get_settings().voter_token_secret
    )
    entry = db_session.scalars(select(AuditLog).where(AuditLog.action == "vote_cast")).one()
    assert entry.actor is None
    with pytest.raises(DuplicateVoteError):
        cast_vote(db_session, poll_id=first.id, option_id=first.options[1].id, subject="alice@example.com")


def test_tally_results_counts_every_option(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()
    yes, no, abstain = (option.id for option in poll.options)
    for voter, option_id in [("a@x.org", yes), ("b@x.org", yes), ("c@x.org", no)]:
        cast_vote(db_session, poll_id=poll.id, option_id=option_id, subject=voter)

    assert tally_results(db_session, get_poll(db_session, poll.id)) == {yes: 2, no: 1, abstain: 0}
