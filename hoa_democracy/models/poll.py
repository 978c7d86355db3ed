"""Poll and poll option ORM models."""
from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from hoa_democracy.models.base import Base, TimestampMixin, UTCDateTime


class PollType(str, enum.Enum):
    INFORMAL = "INFORMAL"
    BINDING = "BINDING"
    STRAW_POLL = "STRAW_POLL"


class PollStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class Poll(TimestampMixin, Base):
    """Community poll whose votes are recorded on a per-poll hash chain."""

    __tablename__ = "polls"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    type: Mapped[PollType] = mapped_column(
        Enum(PollType, name="poll_type"), nullable=False, default=PollType.INFORMAL
    )
    is_anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    start_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    created_by: Mapped[str] = mapped_column(String(320), nullable=False)

    options = relationship(
        "PollOption",
        back_populates="poll",
        cascade="all, delete-orphan",
        order_by="PollOption.order_index",
    )
    votes = relationship(
        "VoteRecord",
        back_populates="poll",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="VoteRecord.sequence",
    )

    def status_at(self, now: datetime | None = None) -> PollStatus:
        current = now or datetime.now(timezone.utc)
        if current < self.start_at:
            return PollStatus.SCHEDULED
        if current > self.end_at:
            return PollStatus.CLOSED
        return PollStatus.ACTIVE

    @property
    def status(self) -> PollStatus:
        return self.status_at()


class PollOption(TimestampMixin, Base):
    """Selectable option within a poll."""

    __tablename__ = "poll_options"
    __table_args__ = (
        UniqueConstraint("poll_id", "order_index", name="uq_poll_options_poll_order"),
        Index("ix_poll_options_poll_id", "poll_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    poll_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("polls.id", ondelete="CASCADE"), nullable=False
    )
    text: Mapped[str] = mapped_column(String(255), nullable=False)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False)

    poll = relationship("Poll", back_populates="options")


__all__ = ["Poll", "PollOption", "PollStatus", "PollType"]
