"""Hash function unit for the per-poll vote chain.

The byte layout below is part of the wire contract: any reimplementation must
produce identical digests for the same logical inputs.

Content preimage::

    hoa-vote:v1|<len>:<poll_id>|<len>:<option_id>|<len>:<voter_token>|<len>:<cast_at>

where ``<len>`` is the UTF-8 byte length of the value that follows, integers
are rendered in base 10, and ``cast_at`` is UTC formatted as
``YYYY-MM-DDTHH:MM:SS.ffffffZ`` (naive datetimes are taken to be UTC).

Link preimage::

    <content_hash>:<previous_link_hash>

The first record of a poll links to ``SHA-256("hoa-poll-genesis:<poll_id>")``.
All digests are SHA-256 rendered as lowercase hex.
"""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

from hoa_democracy.services.errors import InvalidInputError

CONTENT_HASH_TAG = "hoa-vote:v1"
GENESIS_PREFIX = "hoa-poll-genesis"
DIGEST_HEX_LENGTH = 64

_HEX_DIGEST = re.compile(r"^[0-9a-f]{64}$")


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def _require_identifier(name: str, value: object) -> int:
    # bool is an int subclass; True must not hash as poll 1
    if value is None:
        raise InvalidInputError(f"{name} is required")
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise InvalidInputError(f"{name} must be non-negative, got {value}")
    return value


def _require_voter_token(value: object) -> str:
    if value is None:
        raise InvalidInputError("voter_token is required")
    if not isinstance(value, str):
        raise InvalidInputError(f"voter_token must be a string, got {type(value).__name__}")
    if not value.strip():
        raise InvalidInputError("voter_token must not be empty")
    return value


def _require_digest(name: str, value: object) -> str:
    if not isinstance(value, str) or not _HEX_DIGEST.match(value):
        raise InvalidInputError(f"{name} must be a {DIGEST_HEX_LENGTH}-character lowercase hex digest")
    return value


def _length_prefixed(value: str) -> str:
    return f"{len(value.encode('utf-8'))}:{value}"


def serialize_cast_at(cast_at: object) -> str:
    """Render a cast timestamp in the canonical UTC form used for hashing."""

    if cast_at is None:
        raise InvalidInputError("cast_at is required")
    if not isinstance(cast_at, datetime):
        raise InvalidInputError(f"cast_at must be a datetime, got {type(cast_at).__name__}")
    if cast_at.tzinfo is None:
        cast_at = cast_at.replace(tzinfo=timezone.utc)
    return cast_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_cast_at(value: str) -> datetime:
    """Parse a timestamp produced by :func:`serialize_cast_at` (or any ISO 8601 string)."""

    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError) as exc:
        raise InvalidInputError(f"cast_at '{value}' is not an ISO 8601 timestamp") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def content_preimage(poll_id: int, option_id: int, voter_token: str, cast_at: datetime) -> str:
    """Return the exact string that :func:`compute_content_hash` digests."""

    fields = (
        str(_require_identifier("poll_id", poll_id)),
        str(_require_identifier("option_id", option_id)),
        _require_voter_token(voter_token),
        serialize_cast_at(cast_at),
    )
    return "|".join([CONTENT_HASH_TAG, *(_length_prefixed(field) for field in fields)])


def compute_content_hash(poll_id: int, option_id: int, voter_token: str, cast_at: datetime) -> str:
    """Digest of a vote record's semantic fields."""

    return _sha256_hex(content_preimage(poll_id, option_id, voter_token, cast_at))


def compute_link_hash(content_hash: str, previous_link_hash: str) -> str:
    """Digest chaining a content hash to the predecessor's link hash."""

    content = _require_digest("content_hash", content_hash)
    previous = _require_digest("previous_link_hash", previous_link_hash)
    return _sha256_hex(f"{content}:{previous}")


def genesis_link_hash(poll_id: int) -> str:
    """Seed used as the previous link hash of a poll's first record."""

    return _sha256_hex(f"{GENESIS_PREFIX}:{_require_identifier('poll_id', poll_id)}")


__all__ = [
    "CONTENT_HASH_TAG",
    "DIGEST_HEX_LENGTH",
    "GENESIS_PREFIX",
    "compute_content_hash",
    "compute_link_hash",
    "content_preimage",
    "genesis_link_hash",
    "parse_cast_at",
    "serialize_cast_at",
]
