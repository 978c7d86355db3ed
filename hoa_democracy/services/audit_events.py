"""Persistence of vote-related audit events."""
from __future__ import annotations

from typing import Any

from sqlalchemy.orm import Session

from hoa_democracy.models import AuditLog


def record_audit_event(
    session: Session,
    *,
    action: str,
    resource_type: str,
    resource_id: str | int | None,
    actor: str | None = None,
    payload: dict[str, Any] | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    """Add an audit row to the session; the caller owns the commit."""

    entry = AuditLog(
        actor=actor,
        action=action,
        resource_type=resource_type,
        resource_id=None if resource_id is None else str(resource_id),
        payload=payload,
        ip_address=ip_address,
    )
    session.add(entry)
    return entry


__all__ = ["record_audit_event"]
