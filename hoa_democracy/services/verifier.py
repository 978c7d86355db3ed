"""Chain verifier: recomputes a poll's vote chain and reports every broken link."""
from __future__ import annotations

import enum
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from hoa_democracy.models import Poll, VoteRecord
from hoa_democracy.obs import record_chain_verification
from hoa_democracy.services.errors import InvalidInputError, PollNotFoundError
from hoa_democracy.services.hash_chain import (
    compute_content_hash,
    compute_link_hash,
    genesis_link_hash,
    parse_cast_at,
)

LOGGER = logging.getLogger(__name__)


class BrokenLinkReason(str, enum.Enum):
    CONTENT_HASH_MISMATCH = "CONTENT_HASH_MISMATCH"
    LINK_HASH_MISMATCH = "LINK_HASH_MISMATCH"
    SEQUENCE_GAP = "SEQUENCE_GAP"


class ChainRecord(Protocol):
    """Anything carrying the stored fields of a vote record."""

    id: str
    sequence: int
    poll_id: int
    option_id: int
    voter_token: str
    cast_at: datetime
    content_hash: str
    link_hash: str


@dataclass(frozen=True, slots=True)
class ChainEntry:
    """Detached copy of a vote record, e.g. loaded from an audit export."""

    id: str
    sequence: int
    poll_id: int
    option_id: int
    voter_token: str
    cast_at: datetime
    content_hash: str
    link_hash: str

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, poll_id: int | None = None) -> "ChainEntry":
        try:
            cast_at = data["cast_at"]
            return cls(
                id=str(data["id"]),
                sequence=int(data["sequence"]),
                poll_id=int(data["poll_id"] if poll_id is None else poll_id),
                option_id=int(data["option_id"]),
                voter_token=str(data["voter_token"]),
                cast_at=cast_at if isinstance(cast_at, datetime) else parse_cast_at(str(cast_at)),
                content_hash=str(data["content_hash"]),
                link_hash=str(data["link_hash"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidInputError(f"Malformed chain entry: {exc}") from exc


@dataclass(frozen=True, slots=True)
class BrokenLink:
    sequence: int
    record_id: str
    reason: BrokenLinkReason
    expected: str | None = None
    actual: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "record_id": self.record_id,
            "reason": self.reason.value,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass(frozen=True, slots=True)
class IntegrityReport:
    """Outcome of verifying one poll's chain. Computed on demand, never persisted."""

    poll_id: int
    valid: bool
    total_votes: int
    broken_links: tuple[BrokenLink, ...] = ()
    head_link_hash: str | None = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def broken_link_count(self) -> int:
        return len(self.broken_links)

    def to_dict(self) -> dict[str, Any]:
        return {
            "poll_id": self.poll_id,
            "valid": self.valid,
            "total_votes": self.total_votes,
            "broken_links": [link.to_dict() for link in self.broken_links],
            "head_link_hash": self.head_link_hash,
            "checked_at": self.checked_at.isoformat(),
        }


def _recompute_content_hash(record: ChainRecord) -> str | None:
    try:
        return compute_content_hash(record.poll_id, record.option_id, record.voter_token, record.cast_at)
    except InvalidInputError:
        # Stored fields no longer form valid input, which is itself tampering.
        return None


def _recompute_link_hash(content_hash: str, previous_link_hash: str) -> str | None:
    try:
        return compute_link_hash(content_hash, previous_link_hash)
    except InvalidInputError:
        return None


def verify_records(poll_id: int, records: Iterable[ChainRecord]) -> IntegrityReport:
    """Recompute the chain over ``records`` (ordered by sequence) and collect broken links.

    Each record's link hash is checked against the chain recomputed from the
    stored content fields, so an in-place edit flags the edited record with
    ``CONTENT_HASH_MISMATCH`` and every later record with ``LINK_HASH_MISMATCH``.
    Nothing is repaired.
    """

    seed = genesis_link_hash(poll_id)
    expected_previous_link = seed
    expected_sequence = 0
    broken: list[BrokenLink] = []
    total = 0

    for record in records:
        total += 1

        if record.sequence != expected_sequence:
            broken.append(
                BrokenLink(
                    sequence=record.sequence,
                    record_id=record.id,
                    reason=BrokenLinkReason.SEQUENCE_GAP,
                    expected=str(expected_sequence),
                    actual=str(record.sequence),
                )
            )
        expected_sequence = record.sequence + 1

        expected_content = _recompute_content_hash(record)
        content_ok = expected_content is not None and expected_content == record.content_hash
        if not content_ok:
            broken.append(
                BrokenLink(
                    sequence=record.sequence,
                    record_id=record.id,
                    reason=BrokenLinkReason.CONTENT_HASH_MISMATCH,
                    expected=expected_content,
                    actual=record.content_hash,
                )
            )

        if expected_content is None:
            expected_link = record.link_hash
        else:
            expected_link = _recompute_link_hash(expected_content, expected_previous_link)

        if content_ok and expected_link != record.link_hash:
            broken.append(
                BrokenLink(
                    sequence=record.sequence,
                    record_id=record.id,
                    reason=BrokenLinkReason.LINK_HASH_MISMATCH,
                    expected=expected_link,
                    actual=record.link_hash,
                )
            )
        # Unrecomputable links resume from the stored value so later records are still checked.
        expected_previous_link = expected_link if expected_link is not None else record.link_hash

    return IntegrityReport(
        poll_id=poll_id,
        valid=not broken,
        total_votes=total,
        broken_links=tuple(broken),
        head_link_hash=expected_previous_link,
    )


class ChainVerifier:
    """Reads a poll's stored chain and verifies it. Read-only."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def verify_chain(self, poll_id: int) -> IntegrityReport:
        if self._session.get(Poll, poll_id) is None:
            raise PollNotFoundError(poll_id)

        records = self._session.scalars(
            select(VoteRecord)
            .where(VoteRecord.poll_id == poll_id)
            .order_by(VoteRecord.sequence.asc(), VoteRecord.id.asc())
        ).all()
        report = verify_records(poll_id, records)

        record_chain_verification(poll_id, valid=report.valid, broken_links=report.broken_link_count)
        if report.valid:
            LOGGER.info(
                "vote chain verified",
                extra={"poll_id": poll_id, "total_votes": report.total_votes},
            )
        else:
            LOGGER.warning(
                "vote chain broken",
                extra={
                    "poll_id": poll_id,
                    "total_votes": report.total_votes,
                    "broken_links": report.broken_link_count,
                },
            )
        return report


__all__ = [
    "BrokenLink",
    "BrokenLinkReason",
    "ChainEntry",
    "ChainRecord",
    "ChainVerifier",
    "IntegrityReport",
    "verify_records",
]
