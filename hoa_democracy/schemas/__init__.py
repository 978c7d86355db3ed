"""Pydantic schemas package."""

from .poll import (
    BrokenLinkRead,
    HealthSummaryRead,
    IntegrityExport,
    IntegrityReportRead,
    OptionTally,
    PollCreate,
    PollOptionRead,
    PollRead,
    PollResults,
    PublicReceipt,
    ReceiptRead,
    ReceiptVerification,
    VoteCastRequest,
    VoteCastResponse,
)

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
