from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy.orm import Session

from hoa_democracy.services.errors import ReceiptNotFoundError
from hoa_democracy.services.hash_chain import compute_content_hash
from hoa_democracy.services.ledger import VoteLedger
from hoa_democracy.services.receipts import ReceiptIssuer, issue_receipt, normalize_receipt_code


def test_issued_receipt_resolves_to_matching_content_hash(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()
    record = VoteLedger(db_session).append_vote(poll.id, poll.options[1].id, "alice@example.com")

    issued = issue_receipt(record)
    resolved = ReceiptIssuer(db_session).resolve_receipt(issued.receipt_code)

    assert resolved == issued
    assert resolved.content_hash == compute_content_hash(
        record.poll_id, record.option_id, record.voter_token, record.cast_at
    )
    assert resolved.verify() is True


def test_receipt_lookup_ignores_case_and_whitespace(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()
    record = VoteLedger(db_session).append_vote(poll.id, poll.options[0].id, "alice@example.com")

    resolved = ReceiptIssuer(db_session).resolve_receipt(f"  {record.receipt_code.lower()} ")

    assert resolved.receipt_code == record.receipt_code
    assert normalize_receipt_code(" ab12 ") == "AB12"


@pytest.mark.parametrize("code", ["nonexistent-code", "", "   "])
def test_unknown_receipt_is_not_found(db_session: Session, code: str) -> None:
    with pytest.raises(ReceiptNotFoundError):
        ReceiptIssuer(db_session).resolve_receipt(code)


def test_receipt_detects_altered_fields(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()
    record = VoteLedger(db_session).append_vote(poll.id, poll.options[0].id, "alice@example.com")
    receipt = issue_receipt(record)

    assert replace(receipt, option_id=poll.options[1].id).verify() is False


def test_receipt_to_dict_uses_canonical_timestamp(db_session: Session, make_poll) -> None:  # type: ignore[no-untyped-def]
    poll = make_poll()
    record = VoteLedger(db_session).append_vote(poll.id, poll.options[0].id, "alice@example.com")

    payload = issue_receipt(record).to_dict()

    assert payload["cast_at"].endswith("Z")
    assert payload["receipt_code"] == record.receipt_code
    assert payload["sequence"] == 0
    assert set(payload) == {
        "receipt_code",
        "poll_id",
        "content_hash",
        "cast_at",
        "option_id",
        "voter_token",
        "sequence",
        "link_hash",
    }
