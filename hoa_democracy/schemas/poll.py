"""Schemas for poll, vote and integrity endpoints."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from hoa_democracy.models import PollStatus, PollType


class PollCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    type: PollType = PollType.INFORMAL
    is_anonymous: bool = False
    start_at: datetime
    end_at: datetime
    options: list[str]


class PollOptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    text: str
    order_index: int


class PollRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str | None
    type: PollType
    is_anonymous: bool
    start_at: datetime
    end_at: datetime
    created_by: str
    status: PollStatus
    options: list[PollOptionRead]


class VoteCastRequest(BaseModel):
    option_id: int = Field(..., ge=0)


class PublicReceipt(BaseModel):
    """Receipt fields returned to anyone presenting a receipt code."""

    receipt_code: str
    poll_id: int
    content_hash: str
    cast_at: str
    option_id: int
    sequence: int
    link_hash: str


class ReceiptRead(PublicReceipt):
    """Everything a voter needs to recompute their vote's content hash."""

    voter_token: str


class VoteCastResponse(BaseModel):
    message: str = "Vote cast successfully"
    receipt: ReceiptRead


class ReceiptVerification(PublicReceipt):
    verified: bool


class OptionTally(BaseModel):
    option_id: int
    text: str
    votes: int


class PollResults(BaseModel):
    poll_id: int
    status: PollStatus
    total_votes: int
    options: list[OptionTally]


class BrokenLinkRead(BaseModel):
    sequence: int
    record_id: str
    reason: str
    expected: str | None = None
    actual: str | None = None


class IntegrityReportRead(BaseModel):
    poll_id: int
    valid: bool
    total_votes: int
    broken_links: list[BrokenLinkRead]
    head_link_hash: str | None
    checked_at: datetime


class HealthSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    poll_id: int
    valid: bool
    total_votes: int
    broken_link_count: int


class IntegrityExport(BaseModel):
    exported_at: datetime
    total_polls: int
    all_valid: bool
    reports: list[IntegrityReportRead]


__all__ = [
    "BrokenLinkRead",
    "HealthSummaryRead",
    "IntegrityExport",
    "IntegrityReportRead",
    "OptionTally",
    "PollCreate",
    "PollOptionRead",
    "PollRead",
    "PollResults",
    "PublicReceipt",
    "ReceiptRead",
    "ReceiptVerification",
    "VoteCastRequest",
    "VoteCastResponse",
]
