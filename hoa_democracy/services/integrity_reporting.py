"""Integrity reporting for health checks, the admin API and audit export."""
from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from hoa_democracy.core.config import Settings, get_settings
from hoa_democracy.models import Poll, VoteRecord
from hoa_democracy.services.errors import PollNotFoundError
from hoa_democracy.services.hash_chain import genesis_link_hash, serialize_cast_at
from hoa_democracy.services.verifier import ChainVerifier, IntegrityReport

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HealthSummary:
    poll_id: int
    valid: bool
    total_votes: int
    broken_link_count: int

    @classmethod
    def from_report(cls, report: IntegrityReport) -> "HealthSummary":
        return cls(
            poll_id=report.poll_id,
            valid=report.valid,
            total_votes=report.total_votes,
            broken_link_count=report.broken_link_count,
        )


class ChainExport:
    """Restartable, lazy sequence of integrity reports, one per poll.

    Every ``iter()`` re-reads the poll ids and verifies each poll on demand, so
    two passes never share state.
    """

    def __init__(self, session: Session, verifier: ChainVerifier) -> None:
        self._session = session
        self._verifier = verifier

    def poll_ids(self) -> list[int]:
        return list(self._session.scalars(select(Poll.id).order_by(Poll.id.asc())))

    def __iter__(self) -> Iterator[IntegrityReport]:
        for poll_id in self.poll_ids():
            try:
                report = self._verifier.verify_chain(poll_id)
            except PollNotFoundError:
                LOGGER.info("poll removed during export", extra={"poll_id": poll_id})
                continue
            yield report


class IntegrityReportingService:
    """Adapts chain verification results for operational consumers."""

    def __init__(self, session: Session, *, settings: Settings | None = None) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._verifier = ChainVerifier(session)

    def get_health_summary(self, poll_id: int) -> HealthSummary:
        return HealthSummary.from_report(self._verifier.verify_chain(poll_id))

    def get_full_report(self, poll_id: int) -> IntegrityReport:
        return self._verifier.verify_chain(poll_id)

    def export_all_chains(self) -> ChainExport:
        return ChainExport(self._session, self._verifier)

    def export_chain_data(self) -> dict[str, Any]:
        """Dump every poll's stored chain for offline re-verification."""

        polls = self._session.scalars(select(Poll).order_by(Poll.id.asc())).all()
        exported: list[dict[str, Any]] = []
        for poll in polls:
            records = self._session.scalars(
                select(VoteRecord)
                .where(VoteRecord.poll_id == poll.id)
                .order_by(VoteRecord.sequence.asc())
            ).all()
            exported.append(
                {
                    "poll_id": poll.id,
                    "poll_title": poll.title,
                    "genesis_hash": genesis_link_hash(poll.id),
                    "chain_head": records[-1].link_hash if records else genesis_link_hash(poll.id),
                    "votes": [
                        {
                            "id": record.id,
                            "sequence": record.sequence,
                            "option_id": record.option_id,
                            "voter_token": record.voter_token,
                            "cast_at": serialize_cast_at(record.cast_at),
                            "content_hash": record.content_hash,
                            "link_hash": record.link_hash,
                        }
                        for record in records
                    ],
                }
            )
        return {
            "export_date": datetime.now(timezone.utc).isoformat(),
            "version": self._settings.version,
            "total_polls": len(exported),
            "polls": exported,
        }


__all__ = ["ChainExport", "HealthSummary", "IntegrityReportingService"]
