"""
Document status state machine.

    draft -> pending -> signed
                     -> rejected (reserved; no operation drives it yet)

signed and rejected are terminal.
"""
from __future__ import annotations

from sqlalchemy.orm import Session

from app.esign.errors import InvalidTransitionError

from . import roster
from .models import Document, DocumentStatus

STATUS_TRANSITIONS: dict[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.DRAFT: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.PENDING: frozenset({DocumentStatus.SIGNED, DocumentStatus.REJECTED}),
    DocumentStatus.SIGNED: frozenset(),
    DocumentStatus.REJECTED: frozenset(),
}

TERMINAL_STATUSES = frozenset(k for k, v in STATUS_TRANSITIONS.items() if not v)


def can_transition(current: DocumentStatus, new: DocumentStatus) -> bool:
    return new in STATUS_TRANSITIONS.get(current, frozenset())


def transition(doc: Document, new: DocumentStatus) -> Document:
    if not can_transition(doc.status, new):
        raise InvalidTransitionError(f"Cannot move document from '{doc.status.value}' to '{new.value}'.")
    doc.status = new
    return doc


def is_complete(total: int, signed: int) -> bool:
    # A document with no signers can never complete.
    return total > 0 and total == signed


def publish(doc: Document) -> Document:
    return transition(doc, DocumentStatus.PENDING)


def recompute_status(s: Session, doc: Document) -> bool:
    """
    Re-count the roster in the caller's transaction and complete the document if every slot is signed.
    Returns True when this call moved the document to signed.
    """
    total, signed = roster.count_total_and_signed(s, doc.id)
    if doc.status == DocumentStatus.PENDING and is_complete(total, signed):
        transition(doc, DocumentStatus.SIGNED)
        return True
    return False
