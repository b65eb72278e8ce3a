"""
Signature ledger: append-only record of completed signature acts.

The ledger persists only. Eligibility is decided by the workflow service
before `append_signature` is called.
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import Signature

# Column limits (match model)
_IP_LEN = 64
_USER_AGENT_LEN = 500


def append_signature(
    s: Session,
    *,
    document_id: int,
    user_id: int,
    payload: str,
    client_ip: str | None,
    user_agent: str | None,
) -> Signature:
    sig = Signature(
        document_id=document_id,
        user_id=user_id,
        signature_data=payload,
        ip_address=(client_ip[:_IP_LEN] if client_ip else None),
        user_agent=(str(user_agent)[:_USER_AGENT_LEN] if user_agent else None),
    )
    s.add(sig)
    s.flush()  # surfaces the (document_id, user_id) uniqueness violation here
    return sig


def list_signatures(s: Session, document_id: int) -> list[Signature]:
    stmt = (
        select(Signature)
        .where(Signature.document_id == document_id)
        .order_by(Signature.signed_at.asc(), Signature.id.asc())
    )
    return list(s.scalars(stmt))
