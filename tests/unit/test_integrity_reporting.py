from __future__ import annotations

import pytest
from sqlalchemy import update
from sqlalchemy.orm import Session

from hoa_democracy.models import VoteRecord
from hoa_democracy.services.errors import PollNotFoundError
from hoa_democracy.services.hash_chain import genesis_link_hash
from hoa_democracy.services.integrity_reporting import HealthSummary, IntegrityReportingService
from hoa_democracy.services.ledger import VoteLedger


def _seed(db_session: Session, make_poll):  # type: ignore[no-untyped-def]
    intact = make_poll(title="Budget 2026")
    tampered = make_poll(title="Fence height")
    empty = make_poll(title="Holiday lights")
    ledger = VoteLedger(db_session)
    for index in range(3):
        ledger.append_vote(intact.id, intact.options[index % 2].id, f"voter-{index}@example.com")
    victim = None
    for index in range(2):
        record = ledger.append_vote(tampered.id, tampered.options[0].id, f"voter-{index}@example.com")
        victim = victim or record
    db_session.execute(
        update(VoteRecord).where(VoteRecord.id == victim.id).values(voter_token="someone-else@example.com")
    )
    db_session.commit()
    db_session.expire_all()
    return intact, tampered, empty


def test_health_summary_counts(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    intact, tampered, empty = _seed(db_session, make_poll)
    service = IntegrityReportingService(db_session)

    assert service.get_health_summary(intact.id) == HealthSummary(intact.id, True, 3, 0)
    assert service.get_health_summary(tampered.id) == HealthSummary(tampered.id, False, 2, 2)
    assert service.get_health_summary(empty.id) == HealthSummary(empty.id, True, 0, 0)


def test_full_report_matches_summary(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    _, tampered, _ = _seed(db_session, make_poll)
    service = IntegrityReportingService(db_session)

    report = service.get_full_report(tampered.id)

    assert HealthSummary.from_report(report) == service.get_health_summary(tampered.id)
    assert [link.reason.value for link in report.broken_links] == [
        "CONTENT_HASH_MISMATCH",
        "LINK_HASH_MISMATCH",
    ]


def test_export_all_chains_is_restartable(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    intact, tampered, empty = _seed(db_session, make_poll)
    export = IntegrityReportingService(db_session).export_all_chains()

    first = [(report.poll_id, report.valid, report.total_votes) for report in export]
    second = [(report.poll_id, report.valid, report.total_votes) for report in export]

    assert first == second
    assert first == [(intact.id, True, 3), (tampered.id, False, 2), (empty.id, True, 0)]


def test_export_all_chains_is_lazy(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    intact, _, _ = _seed(db_session, make_poll)
    iterator = iter(IntegrityReportingService(db_session).export_all_chains())

    assert next(iterator).poll_id == intact.id


def test_export_all_chains_sees_polls_created_between_passes(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    make_poll(title="First")
    export = IntegrityReportingService(db_session).export_all_chains()
    assert len(list(export)) == 1

    make_poll(title="Second")

    assert len(list(export)) == 2


def test_export_chain_data_dumps_stored_fields(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    intact, tampered, empty = _seed(db_session, make_poll)

    data = IntegrityReportingService(db_session).export_chain_data()

    assert data["total_polls"] == 3
    polls = {poll["poll_id"]: poll for poll in data["polls"]}
    assert polls[intact.id]["genesis_hash"] == genesis_link_hash(intact.id)
    assert [vote["sequence"] for vote in polls[intact.id]["votes"]] == [0, 1, 2]
    assert polls[intact.id]["chain_head"] == polls[intact.id]["votes"][-1]["link_hash"]
    assert polls[tampered.id]["votes"][0]["voter_token"] == "someone-else@example.com"
    assert polls[empty.id]["votes"] == []
    assert polls[empty.id]["chain_head"] == genesis_link_hash(empty.id)


def test_unknown_poll_raises(db_session: Session) -> None:
    with pytest.raises(PollNotFoundError):
        IntegrityReportingService(db_session).get_health_summary(12345)


def test_export_skips_polls_deleted_mid_pass(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    intact, tampered, empty = _seed(db_session, make_poll)
    iterator = iter(IntegrityReportingService(db_session).export_all_chains())
    assert next(iterator).poll_id == intact.id

    db_session.delete(empty)
    db_session.commit()

    assert [report.poll_id for report in iterator] == [tampered.id]
