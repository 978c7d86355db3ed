"""Vote record ORM model: one link of a poll's hash chain."""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hoa_democracy.models.base import Base, UTCDateTime
from hoa_democracy.services.errors import ImmutableRecordError


class VoteRecord(Base):
    """Append-only vote record.

    ``poll_id``, ``option_id``, ``voter_token`` and ``cast_at`` are the content
    fields; ``content_hash`` and ``link_hash`` are derived from them and the
    predecessor's link hash. Nothing else feeds the hashes.
    """

    __tablename__ = "vote_records"
    __table_args__ = (
        UniqueConstraint("poll_id", "sequence", name="uq_vote_records_poll_sequence"),
        UniqueConstraint("poll_id", "voter_token", name="uq_vote_records_poll_voter"),
        Index("ix_vote_records_receipt_code", "receipt_code", unique=True),
        Index("ix_vote_records_option_id", "option_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    poll_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("polls.id", ondelete="CASCADE"), nullable=False
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    option_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("poll_options.id", ondelete="CASCADE"), nullable=False
    )
    voter_token: Mapped[str] = mapped_column(String(128), nullable=False)
    cast_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    link_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    receipt_code: Mapped[str] = mapped_column(String(32), nullable=False)

    poll = relationship("Poll", back_populates="votes")
    option = relationship("PollOption")


@event.listens_for(VoteRecord, "before_update")
def _reject_vote_record_update(mapper, connection, target: VoteRecord) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(f"Vote record '{target.id}' is immutable once persisted")


__all__ = ["VoteRecord"]
