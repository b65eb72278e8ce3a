"""
Signing JSON API.
"""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from app.esign.access import current_user, require_user
from app.esign.db import db_session
from app.esign.errors import ValidationError
from app.esign.models import AuditLog
from app.esign.utils import client_agent, client_origin, isoformat

from .models import Document, Signature, SignerSlot
from .service import (
    DocumentSummary,
    create_document,
    get_document_detail,
    list_documents_for_user,
    policy_from_config,
    publish_document,
    submit_signature,
)

bp = Blueprint("signing", __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string.")
    return value


def _optional_bool(data: dict, key: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be true or false.")
    return value


def _signer_emails(data: dict) -> list[str]:
    value = data.get("signerEmails")
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(e, str) or e is None for e in value):
        raise ValidationError("signerEmails must be a list of email strings.")
    return [e or "" for e in value]


def _summary_json(d: DocumentSummary) -> dict:
    return {
        "id": d.id,
        "title": d.title,
        "description": d.description,
        "status": d.status.value,
        "creator_id": d.creator_id,
        "creator_name": d.creator_name,
        "created_at": isoformat(d.created_at),
        "updated_at": isoformat(d.updated_at),
        "total_signers": d.total_signers,
        "signature_count": d.signed_count,
    }


def _document_json(d: Document) -> dict:
    return {
        "id": d.id,
        "title": d.title,
        "description": d.description,
        "status": d.status.value,
        "creator_id": d.creator_id,
        "creator_name": d.creator.username if d.creator else None,
        "creator_email": d.creator.email if d.creator else None,
        "created_at": isoformat(d.created_at),
        "updated_at": isoformat(d.updated_at),
    }


def _signer_json(slot: SignerSlot) -> dict:
    return {
        "id": slot.id,
        "order_number": slot.order_number,
        "status": slot.status.value,
        "invited_at": isoformat(slot.invited_at),
        "signed_at": isoformat(slot.signed_at),
        "user_id": slot.user_id,
        "username": slot.user.username if slot.user else None,
        "email": slot.user.email if slot.user else None,
    }


def _signature_json(sig: Signature) -> dict:
    # The image payload itself is not echoed back.
    return {
        "id": sig.id,
        "signed_at": isoformat(sig.signed_at),
        "ip_address": sig.ip_address,
        "user_id": sig.user_id,
        "username": sig.user.username if sig.user else None,
        "email": sig.user.email if sig.user else None,
    }


def _audit_json(entry: AuditLog, usernames: dict[int, str]) -> dict:
    return {
        "id": entry.id,
        "action": entry.action,
        "details": entry.details,
        "ip_address": entry.ip_address,
        "created_at": isoformat(entry.created_at),
        "user_id": entry.user_id,
        "username": usernames.get(entry.user_id) if entry.user_id else None,
    }


@bp.get("")
@require_user
def list_documents():
    s = db_session()
    u = current_user()
    docs = list_documents_for_user(s, u.id)
    return jsonify(documents=[_summary_json(d) for d in docs])


@bp.post("")
@require_user
def create_document_post():
    s = db_session()
    u = current_user()
    data = _json_body()

    doc_id = create_document(
        s,
        creator_id=u.id,
        title=_optional_str(data, "title") or "",
        description=_optional_str(data, "description"),
        signer_emails=_signer_emails(data),
        policy=policy_from_config(current_app.config),
        draft=_optional_bool(data, "draft"),
    )
    return jsonify(message="Document created.", documentId=doc_id), 201


@bp.get("/<int:doc_id>")
@require_user
def document_detail(doc_id: int):
    s = db_session()
    u = current_user()
    policy = policy_from_config(current_app.config)

    detail = get_document_detail(s, doc_id, u.id, audit_limit=policy.audit_limit)

    usernames = {slot.user_id: slot.user.username for slot in detail.signers if slot.user}
    if detail.document.creator:
        usernames[detail.document.creator_id] = detail.document.creator.username

    return jsonify(
        document=_document_json(detail.document),
        signers=[_signer_json(slot) for slot in detail.signers],
        signatures=[_signature_json(sig) for sig in detail.signatures],
        auditLogs=[_audit_json(e, usernames) for e in detail.audit_logs],
        signedCount=detail.signed_count,
        totalSigners=detail.total_signers,
    )


@bp.post("/<int:doc_id>/publish")
@require_user
def publish_document_post(doc_id: int):
    s = db_session()
    u = current_user()
    doc = publish_document(s, document_id=doc_id, user_id=u.id)
    return jsonify(message="Document published.", status=doc.status.value)


@bp.post("/<int:doc_id>/sign")
@require_user
def sign_document(doc_id: int):
    s = db_session()
    u = current_user()
    data = _json_body()

    all_signed = submit_signature(
        s,
        document_id=doc_id,
        user_id=u.id,
        payload=_optional_str(data, "signatureData"),
        client_ip=client_origin(request),
        user_agent=client_agent(request),
        policy=policy_from_config(current_app.config),
    )
    return jsonify(message="Signed.", allSigned=all_signed)
