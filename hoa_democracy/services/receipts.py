"""Voter-facing receipts derived from vote records."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from hoa_democracy.models import VoteRecord
from hoa_democracy.services.errors import ReceiptNotFoundError
from hoa_democracy.services.hash_chain import compute_content_hash, serialize_cast_at

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Receipt:
    """Proof artifact handed to the voter at cast time.

    Carries every content field so the holder can recompute ``content_hash``
    without trusting the server.
    """

    receipt_code: str
    poll_id: int
    content_hash: str
    cast_at: datetime
    option_id: int
    voter_token: str
    sequence: int
    link_hash: str

    def recompute_content_hash(self) -> str:
        return compute_content_hash(self.poll_id, self.option_id, self.voter_token, self.cast_at)

    def verify(self) -> bool:
        return self.recompute_content_hash() == self.content_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_code": self.receipt_code,
            "poll_id": self.poll_id,
            "content_hash": self.content_hash,
            "cast_at": serialize_cast_at(self.cast_at),
            "option_id": self.option_id,
            "voter_token": self.voter_token,
            "sequence": self.sequence,
            "link_hash": self.link_hash,
        }

    def public_dict(self) -> dict[str, Any]:
        """Fields safe to show anyone holding the code; the voter token is withheld."""
        fields = self.to_dict()
        del fields["voter_token"]
        return fields


def issue_receipt(record: VoteRecord) -> Receipt:
    """Derive the receipt for a freshly appended record. No storage access."""

    return Receipt(
        receipt_code=record.receipt_code,
        poll_id=record.poll_id,
        content_hash=record.content_hash,
        cast_at=record.cast_at,
        option_id=record.option_id,
        voter_token=record.voter_token,
        sequence=record.sequence,
        link_hash=record.link_hash,
    )


def normalize_receipt_code(receipt_code: str) -> str:
    return receipt_code.strip().upper()


class ReceiptIssuer:
    """Resolves receipt codes back to receipts through the unique receipt index."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def issue_receipt(self, record: VoteRecord) -> Receipt:
        return issue_receipt(record)

    def resolve_receipt(self, receipt_code: str) -> Receipt:
        code = normalize_receipt_code(receipt_code or "")
        record = None
        if code:
            record = self._session.scalars(
                select(VoteRecord).where(VoteRecord.receipt_code == code)
            ).first()
        if record is None:
            LOGGER.info("receipt lookup miss")
            raise ReceiptNotFoundError(code)
        return issue_receipt(record)


__all__ = ["Receipt", "ReceiptIssuer", "issue_receipt", "normalize_receipt_code"]
