"""ORM models package."""
from .audit_log import AuditLog
from .base import Base, TimestampMixin, UTCDateTime
from .poll import Poll, PollOption, PollStatus, PollType
from .vote_record import VoteRecord

__all__ = [
    "AuditLog",
    "Base",
    "Poll",
    "PollOption",
    "PollStatus",
    "PollType",
    "TimestampMixin",
    "UTCDateTime",
    "VoteRecord",
]
