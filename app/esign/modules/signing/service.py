"""
Signing workflow service layer.

Every write operation is one transaction: the document, roster, ledger and
audit rows it touches commit together or not at all.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.esign.audit import (
    ACTION_CREATED,
    ACTION_PUBLISHED,
    ACTION_SIGNED,
    DEFAULT_LIST_LIMIT,
    list_events,
    record_event,
)
from app.esign.db import atomic
from app.esign.errors import (
    AlreadySignedError,
    InvalidTransitionError,
    NotAuthorizedError,
    NotFoundError,
    OutOfOrderError,
    PersistenceFault,
    ValidationError,
)
from app.esign.models import AuditLog

from . import lifecycle, roster
from .ledger import append_signature, list_signatures
from .models import Document, DocumentStatus, Signature, SignerSlot, SlotStatus

logger = logging.getLogger(__name__)

TITLE_MAX_LEN = 255


@dataclass(frozen=True)
class SigningPolicy:
    dense_order: bool = False  # renumber resolved signers 1..N instead of keeping list positions
    sequential: bool = False  # require lower order numbers to sign first
    max_signature_bytes: int = 2 * 1024 * 1024
    audit_limit: int = DEFAULT_LIST_LIMIT


DEFAULT_POLICY = SigningPolicy()


def policy_from_config(config: Mapping) -> SigningPolicy:
    return SigningPolicy(
        dense_order=config.get("ROSTER_ORDER_POLICY", "positional") == "dense",
        sequential=config.get("SIGNING_ORDER", "parallel") == "sequential",
        max_signature_bytes=int(config.get("MAX_SIGNATURE_BYTES") or DEFAULT_POLICY.max_signature_bytes),
        audit_limit=int(config.get("AUDIT_LIST_LIMIT") or DEFAULT_LIST_LIMIT),
    )


@dataclass(frozen=True)
class DocumentSummary:
    id: int
    title: str
    description: str
    status: DocumentStatus
    creator_id: int
    creator_name: str | None
    created_at: datetime
    updated_at: datetime
    total_signers: int
    signed_count: int


@dataclass
class DocumentDetail:
    document: Document
    signers: list[SignerSlot] = field(default_factory=list)
    signatures: list[Signature] = field(default_factory=list)
    audit_logs: list[AuditLog] = field(default_factory=list)
    total_signers: int = 0
    signed_count: int = 0


def _lock_document(s: Session, document_id: int) -> Document:
    stmt = (
        select(Document)
        .where(Document.id == document_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    doc = s.scalars(stmt).one_or_none()
    if doc is None:
        raise NotFoundError()
    return doc


def create_document(
    s: Session,
    *,
    creator_id: int,
    title: str,
    description: str | None = None,
    signer_emails: Sequence[str] | None = None,
    policy: SigningPolicy = DEFAULT_POLICY,
    draft: bool = False,
) -> int:
    """
    Create a document with its signer roster and the "created" audit entry.

    Documents open for signing immediately unless `draft` is set, in which case
    the creator publishes them later.
    """
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required.")
    if len(title) > TITLE_MAX_LEN:
        raise ValidationError(f"Title must be at most {TITLE_MAX_LEN} characters.")
    emails = list(signer_emails or [])

    try:
        with atomic(s):
            doc = Document(
                title=title,
                description=(description or "").strip(),
                creator_id=creator_id,
                status=DocumentStatus.DRAFT if draft else DocumentStatus.PENDING,
            )
            s.add(doc)
            s.flush()

            slots = roster.create_roster(s, doc.id, emails, dense=policy.dense_order)

            record_event(
                s,
                document_id=doc.id,
                actor_id=creator_id,
                action=ACTION_CREATED,
                details=f'Document "{title}" created with {len(slots)} signer(s)',
            )
            doc_id = doc.id
    except SQLAlchemyError as e:
        logger.exception("create_document failed (creator_id=%s)", creator_id)
        raise PersistenceFault(detail=str(e)) from e

    logger.info(
        "Document %s created by user %s (%d of %d signer emails resolved)",
        doc_id,
        creator_id,
        len(slots),
        len(emails),
    )
    return doc_id


def publish_document(s: Session, *, document_id: int, user_id: int) -> Document:
    """Open a draft document for signing. Creator only."""
    try:
        with atomic(s):
            doc = _lock_document(s, document_id)
            if doc.creator_id != user_id:
                raise NotAuthorizedError("Only the creator can publish this document.")
            lifecycle.publish(doc)
            record_event(
                s,
                document_id=doc.id,
                actor_id=user_id,
                action=ACTION_PUBLISHED,
                details=f'Document "{doc.title}" opened for signing',
            )
    except SQLAlchemyError as e:
        logger.exception("publish_document failed (document_id=%s)", document_id)
        raise PersistenceFault(detail=str(e)) from e

    logger.info("Document %s published by user %s", document_id, user_id)
    return doc


def submit_signature(
    s: Session,
    *,
    document_id: int,
    user_id: int,
    payload: str | None,
    client_ip: str | None,
    user_agent: str | None,
    policy: SigningPolicy = DEFAULT_POLICY,
) -> bool:
    """
    Record the caller's signature on a document.

    Ledger insert, slot update, completion check and audit entry share one
    transaction. The document row is locked first so signers of the same
    document are serialised and the completion re-count sees every commit.

    Returns True when the document is fully signed after this signature.
    """
    payload = payload.strip() if isinstance(payload, str) else ""
    if not payload:
        raise ValidationError("Signature data is required.")
    if len(payload.encode("utf-8")) > policy.max_signature_bytes:
        raise ValidationError("Signature image is too large.")

    try:
        with atomic(s):
            doc = _lock_document(s, document_id)

            slot = roster.find_slot(s, doc.id, user_id, for_update=True)
            if slot is None:
                raise NotAuthorizedError()
            if slot.status == SlotStatus.SIGNED:
                raise AlreadySignedError()
            if doc.status != DocumentStatus.PENDING:
                raise InvalidTransitionError("Document is not open for signing.")
            if policy.sequential and roster.pending_predecessors(s, slot):
                raise OutOfOrderError()

            try:
                append_signature(
                    s,
                    document_id=doc.id,
                    user_id=user_id,
                    payload=payload,
                    client_ip=client_ip,
                    user_agent=user_agent,
                )
            except IntegrityError as e:
                # A concurrent submission for the same signer committed first.
                raise AlreadySignedError() from e

            roster.mark_signed(slot)
            all_signed = lifecycle.recompute_status(s, doc)

            record_event(
                s,
                document_id=doc.id,
                actor_id=user_id,
                action=ACTION_SIGNED,
                details=f"Signed by signer #{slot.order_number}",
                client_ip=client_ip,
            )
    except SQLAlchemyError as e:
        logger.exception("submit_signature failed (document_id=%s user_id=%s)", document_id, user_id)
        raise PersistenceFault(detail=str(e)) from e

    logger.info("User %s signed document %s", user_id, document_id)
    if all_signed:
        logger.info("Document %s fully signed", document_id)
    return all_signed


def list_documents_for_user(s: Session, user_id: int) -> list[DocumentSummary]:
    """Documents the user created or is a signer on, newest first, with signed/total counts."""
    total_q = (
        select(func.count(SignerSlot.id))
        .where(SignerSlot.document_id == Document.id)
        .correlate(Document)
        .scalar_subquery()
    )
    signed_q = (
        select(func.count(SignerSlot.id))
        .where(SignerSlot.document_id == Document.id, SignerSlot.status == SlotStatus.SIGNED)
        .correlate(Document)
        .scalar_subquery()
    )
    is_signer = exists().where(SignerSlot.document_id == Document.id, SignerSlot.user_id == user_id)

    stmt = (
        select(Document, total_q, signed_q)
        .where(
            or_(
                Document.creator_id == user_id,
                and_(is_signer, Document.status != DocumentStatus.DRAFT),
            )
        )
        .order_by(Document.created_at.desc(), Document.id.desc())
    )
    try:
        rows = s.execute(stmt).all()
    except SQLAlchemyError as e:
        logger.exception("list_documents_for_user failed (user_id=%s)", user_id)
        raise PersistenceFault(detail=str(e)) from e

    return [
        DocumentSummary(
            id=doc.id,
            title=doc.title,
            description=doc.description,
            status=doc.status,
            creator_id=doc.creator_id,
            creator_name=doc.creator.username if doc.creator else None,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
            total_signers=int(total or 0),
            signed_count=int(signed or 0),
        )
        for doc, total, signed in rows
    ]


def get_document_detail(
    s: Session,
    document_id: int,
    user_id: int,
    *,
    audit_limit: int = DEFAULT_LIST_LIMIT,
) -> DocumentDetail:
    """
    Document, ordered roster, chronological signatures and the latest audit entries.

    Callers who are neither the creator nor a signer get NotFoundError, as do
    signers of a document still in draft.
    """
    try:
        doc = s.get(Document, document_id)
        if doc is None:
            raise NotFoundError()
        signers = roster.list_roster(s, doc.id)
        is_creator = doc.creator_id == user_id
        is_signer = any(slot.user_id == user_id for slot in signers)
        if not is_creator and not (is_signer and doc.status != DocumentStatus.DRAFT):
            raise NotFoundError()

        signatures = list_signatures(s, doc.id)
        events = list_events(s, doc.id, limit=audit_limit)
    except SQLAlchemyError as e:
        logger.exception("get_document_detail failed (document_id=%s)", document_id)
        raise PersistenceFault(detail=str(e)) from e

    return DocumentDetail(
        document=doc,
        signers=signers,
        signatures=signatures,
        audit_logs=events,
        total_signers=len(signers),
        signed_count=sum(1 for slot in signers if slot.status == SlotStatus.SIGNED),
    )
