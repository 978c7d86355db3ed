"""Append-only vote ledger maintaining one hash chain per poll."""
from __future__ import annotations

import logging
import secrets
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from hoa_democracy.core.config import Settings, get_settings
from hoa_democracy.models import Poll, VoteRecord
from hoa_democracy.obs import LEDGER_APPEND_COUNTER, LEDGER_CONFLICT_COUNTER
from hoa_democracy.services.errors import (
    DuplicateVoteError,
    PollNotFoundError,
    SequenceConflictError,
)
from hoa_democracy.services.hash_chain import (
    compute_content_hash,
    compute_link_hash,
    genesis_link_hash,
)

LOGGER = logging.getLogger(__name__)


class PollLockRegistry:
    """Hands out one in-process lock per poll so appends on different polls never contend.

    An entry lives only while some append is waiting on or holding it, so the
    registry stays as small as the set of polls currently being voted on.
    """

    def __init__(self) -> None:
        self._locks: dict[int, Lock] = {}
        self._waiters: dict[int, int] = {}
        self._guard = Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def lock_for(self, poll_id: int) -> Lock:
        with self._guard:
            return self._lock_for_locked(poll_id)

    def _lock_for_locked(self, poll_id: int) -> Lock:
        lock = self._locks.get(poll_id)
        if lock is None:
            lock = self._locks[poll_id] = Lock()
        return lock

    @contextmanager
    def hold(self, poll_id: int, *, timeout: float) -> Iterator[None]:
        with self._guard:
            lock = self._lock_for_locked(poll_id)
            self._waiters[poll_id] = self._waiters.get(poll_id, 0) + 1
        try:
            if not lock.acquire(timeout=timeout):
                raise SequenceConflictError(
                    f"Timed out after {timeout:g}s waiting to append to poll '{poll_id}'"
                )
            try:
                yield
            finally:
                lock.release()
        finally:
            self._checkin(poll_id)

    def _checkin(self, poll_id: int) -> None:
        with self._guard:
            remaining = self._waiters.get(poll_id, 1) - 1
            if remaining > 0:
                self._waiters[poll_id] = remaining
                return
            self._waiters.pop(poll_id, None)
            lock = self._locks.get(poll_id)
            if lock is not None and not lock.locked():
                del self._locks[poll_id]

    def reset(self) -> None:
        with self._guard:
            self._locks.clear()
            self._waiters.clear()


poll_locks = PollLockRegistry()


@contextmanager
def _ledger_transaction(session: Session, *, poll_id: int, lock_timeout_seconds: float) -> Iterator[None]:
    """Serialize the read-previous/write-next step for one poll at the database level."""

    bind = session.get_bind()
    if bind is None:
        raise RuntimeError("Session is not bound to an engine")

    dialect = bind.dialect.name
    try:
        if dialect == "sqlite":
            # pysqlite defers BEGIN until the first write; take the write lock up front instead.
            dbapi_connection = session.connection().connection.dbapi_connection
            if not getattr(dbapi_connection, "in_transaction", False):
                session.execute(text("BEGIN IMMEDIATE"))
        elif dialect == "postgresql":
            timeout_ms = max(1, int(lock_timeout_seconds * 1000))
            session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))

        # Row lock on the poll is the per-poll latest-record pointer; a no-op on SQLite.
        locked = session.scalar(select(Poll.id).where(Poll.id == poll_id).with_for_update())
        if locked is None:
            raise PollNotFoundError(poll_id)
        yield
        session.commit()
    except Exception:
        session.rollback()
        raise


def has_voted(session: Session, poll_id: int, voter_token: str) -> bool:
    statement = select(VoteRecord.id).where(
        VoteRecord.poll_id == poll_id, VoteRecord.voter_token == voter_token
    )
    return session.scalar(statement) is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_cast_at(cast_at: datetime | None) -> datetime | None:
    if cast_at is None:
        return _utcnow()
    if not isinstance(cast_at, datetime):
        return cast_at
    if cast_at.tzinfo is None:
        cast_at = cast_at.replace(tzinfo=timezone.utc)
    return cast_at.astimezone(timezone.utc)


def generate_receipt_code(num_bytes: int = 8) -> str:
    """Random voter-facing receipt code, unrelated to any hash value."""

    return secrets.token_hex(num_bytes).upper()


class VoteLedger:
    """Appends correctly linked vote records, one gap-free sequence per poll."""

    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        locks: PollLockRegistry | None = None,
    ) -> None:
        self._session = session
        self._settings = settings or get_settings()
        self._locks = locks or poll_locks

    def append_vote(
        self,
        poll_id: int,
        option_id: int,
        voter_token: str,
        cast_at: datetime | None = None,
    ) -> VoteRecord:
        """Persist a new record at the next sequence position of ``poll_id``'s chain.

        Raises ``InvalidInputError`` for malformed fields, ``PollNotFoundError``
        when the poll has no metadata and ``SequenceConflictError`` when a
        concurrent append could not be serialized within the configured wait.
        """

        cast_at = _normalize_cast_at(cast_at)
        content_hash = compute_content_hash(poll_id, option_id, voter_token, cast_at)

        if self._session.get(Poll, poll_id) is None:
            raise PollNotFoundError(poll_id)

        timeout = self._settings.ledger_lock_timeout_seconds
        try:
            with self._locks.hold(poll_id, timeout=timeout):
                with _ledger_transaction(self._session, poll_id=poll_id, lock_timeout_seconds=timeout):
                    previous = self._session.scalars(
                        select(VoteRecord)
                        .where(VoteRecord.poll_id == poll_id)
                        .order_by(VoteRecord.sequence.desc())
                        .limit(1)
                    ).first()

                    sequence = previous.sequence + 1 if previous is not None else 0
                    previous_link_hash = (
                        previous.link_hash if previous is not None else genesis_link_hash(poll_id)
                    )
                    record = VoteRecord(
                        poll_id=poll_id,
                        sequence=sequence,
                        option_id=option_id,
                        voter_token=voter_token,
                        cast_at=cast_at,
                        content_hash=content_hash,
                        link_hash=compute_link_hash(content_hash, previous_link_hash),
                        receipt_code=generate_receipt_code(self._settings.receipt_code_bytes),
                    )
                    self._session.add(record)
                    self._session.flush()
        except IntegrityError as exc:
            if has_voted(self._session, poll_id, voter_token):
                raise DuplicateVoteError(f"Voter already has a vote recorded on poll '{poll_id}'") from exc
            LEDGER_CONFLICT_COUNTER.inc()
            LOGGER.warning("vote append conflict", extra={"poll_id": poll_id, "error": str(exc.orig)})
            raise SequenceConflictError(f"Concurrent append detected on poll '{poll_id}'") from exc
        except OperationalError as exc:
            LEDGER_CONFLICT_COUNTER.inc()
            LOGGER.warning("vote append lock timeout", extra={"poll_id": poll_id, "error": str(exc.orig)})
            raise SequenceConflictError(f"Could not lock poll '{poll_id}' for append") from exc
        except SequenceConflictError:
            LEDGER_CONFLICT_COUNTER.inc()
            LOGGER.warning("vote append lock wait exceeded", extra={"poll_id": poll_id})
            raise

        self._session.refresh(record)
        LEDGER_APPEND_COUNTER.inc()
        LOGGER.info(
            "vote appended",
            extra={
                "poll_id": poll_id,
                "sequence": record.sequence,
                "link_hash": record.link_hash,
            },
        )
        return record


__all__ = ["PollLockRegistry", "VoteLedger", "generate_receipt_code", "has_voted", "poll_locks"]
