"""
Signer roster: the ordered signer slots of one document.
"""
from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.esign.models import User
from app.esign.utils import normalize_email, utcnow

from .models import SignerSlot, SlotStatus


def resolve_user_ids(s: Session, emails: Iterable[str]) -> dict[str, int]:
    """Map normalized email -> user id for the emails that belong to active users."""
    wanted = {normalize_email(e) for e in emails} - {""}
    if not wanted:
        return {}
    rows = s.execute(select(User.email, User.id).where(User.email.in_(sorted(wanted)), User.is_active.is_(True)))
    return {email: uid for email, uid in rows}


def create_roster(
    s: Session,
    document_id: int,
    emails: Iterable[str],
    *,
    dense: bool = False,
) -> list[SignerSlot]:
    """
    Create one pending slot per resolvable email.

    Emails that match no user are dropped without error. Order numbers follow
    the submitted list: by default a slot keeps its email's 1-based position
    (gaps where emails were dropped); with dense=True resolved signers are
    numbered 1..N. A user listed twice keeps only the first slot.
    """
    emails = list(emails or [])
    known = resolve_user_ids(s, emails)

    slots: list[SignerSlot] = []
    seen: set[int] = set()
    for position, email in enumerate(emails, start=1):
        uid = known.get(normalize_email(email))
        if uid is None or uid in seen:
            continue
        seen.add(uid)
        slot = SignerSlot(
            document_id=document_id,
            user_id=uid,
            order_number=len(slots) + 1 if dense else position,
            status=SlotStatus.PENDING,
        )
        s.add(slot)
        slots.append(slot)
    s.flush()
    return slots


def find_slot(s: Session, document_id: int, user_id: int, *, for_update: bool = False) -> SignerSlot | None:
    stmt = select(SignerSlot).where(SignerSlot.document_id == document_id, SignerSlot.user_id == user_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return s.scalars(stmt).one_or_none()


def mark_signed(slot: SignerSlot) -> SignerSlot:
    # Callers guarantee the slot is still pending.
    slot.status = SlotStatus.SIGNED
    slot.signed_at = utcnow()
    return slot


def count_total_and_signed(s: Session, document_id: int) -> tuple[int, int]:
    s.flush()
    stmt = select(
        func.count(SignerSlot.id),
        func.coalesce(func.sum(case((SignerSlot.status == SlotStatus.SIGNED, 1), else_=0)), 0),
    ).where(SignerSlot.document_id == document_id)
    total, signed = s.execute(stmt).one()
    return int(total or 0), int(signed or 0)


def list_roster(s: Session, document_id: int) -> list[SignerSlot]:
    stmt = (
        select(SignerSlot)
        .where(SignerSlot.document_id == document_id)
        .order_by(SignerSlot.order_number.asc())
    )
    return list(s.scalars(stmt))


def pending_predecessors(s: Session, slot: SignerSlot) -> list[SignerSlot]:
    """Slots declared before `slot` that have not signed yet."""
    stmt = (
        select(SignerSlot)
        .where(
            SignerSlot.document_id == slot.document_id,
            SignerSlot.order_number < slot.order_number,
            SignerSlot.status == SlotStatus.PENDING,
        )
        .order_by(SignerSlot.order_number.asc())
    )
    return list(s.scalars(stmt))
