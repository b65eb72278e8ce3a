from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.esign.models import AuditLog

ACTION_CREATED = "created"
ACTION_PUBLISHED = "published"
ACTION_SIGNED = "signed"

ACTIONS = frozenset({ACTION_CREATED, ACTION_PUBLISHED, ACTION_SIGNED})

DEFAULT_LIST_LIMIT = 20

# Column limits (match model)
_DETAILS_LEN = 10_000
_IP_LEN = 64


def record_event(
    s: Session,
    *,
    document_id: int,
    actor_id: int | None,
    action: str,
    details: str,
    client_ip: str | None = None,
) -> AuditLog:
    """
    Append-only audit event helper.

    Flushes so the entry gets its sequence id; commit stays with the caller's transaction.
    """
    if action not in ACTIONS:
        raise ValueError(f"Unknown audit action: {action!r}")
    entry = AuditLog(
        document_id=document_id,
        user_id=actor_id,
        action=action,
        details=(details or "")[:_DETAILS_LEN],
        ip_address=(client_ip[:_IP_LEN] if client_ip else None),
    )
    s.add(entry)
    s.flush()
    return entry


def list_events(s: Session, document_id: int, limit: int = DEFAULT_LIST_LIMIT) -> list[AuditLog]:
    """Newest first; ties on created_at fall back to the insert sequence."""
    stmt = (
        select(AuditLog)
        .where(AuditLog.document_id == document_id)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .limit(max(limit, 0))
    )
    return list(s.scalars(stmt))
