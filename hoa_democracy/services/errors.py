"""Exception hierarchy for the vote ledger and poll directory."""
from __future__ import annotations


class LedgerError(RuntimeError):
    """Base exception for vote ledger errors."""


class InvalidInputError(LedgerError, ValueError):
    """Raised when a field supplied for hashing or appending is missing or malformed."""


class SequenceConflictError(LedgerError):
    """Raised when a concurrent append for the same poll wins the race; callers may retry."""


class ImmutableRecordError(LedgerError):
    """Raised when code attempts to modify a persisted vote record."""


class NotFoundError(LedgerError):
    """Base exception for lookups that resolve to nothing."""


class PollNotFoundError(NotFoundError):
    """Raised when a poll identifier has no poll metadata."""

    def __init__(self, poll_id: int) -> None:
        super().__init__(f"Poll '{poll_id}' was not found")
        self.poll_id = poll_id


class ReceiptNotFoundError(NotFoundError):
    """Raised when a receipt code does not resolve to a vote record."""

    def __init__(self, receipt_code: str) -> None:
        super().__init__("Receipt not found")
        self.receipt_code = receipt_code


class PollError(LedgerError):
    """Base exception for poll directory checks performed before an append."""


class PollClosedError(PollError):
    """Raised when a vote is cast outside the poll's voting window."""


class InvalidOptionError(PollError):
    """Raised when the selected option does not belong to the poll."""


class DuplicateVoteError(PollError):
    """Raised when the voter already has a record on the poll's chain."""


class PollConfigurationError(PollError):
    """Raised when poll creation input violates poll rules or feature flags."""


__all__ = [
    "DuplicateVoteError",
    "ImmutableRecordError",
    "InvalidInputError",
    "InvalidOptionError",
    "LedgerError",
    "NotFoundError",
    "PollClosedError",
    "PollConfigurationError",
    "PollError",
    "PollNotFoundError",
    "ReceiptNotFoundError",
    "SequenceConflictError",
]
