from __future__ import annotations

import secrets

from flask import Request, current_app, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

_TOKEN_SALT = "esign.auth.token"


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from header or JSON body."""
    token = req.headers.get("X-CSRF-Token")

    if not token and req.is_json:
        json_data = req.get_json(silent=True) or {}
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    return bool(token and token == session.get("csrf_token"))


def bearer_token(req: Request) -> str | None:
    header = (req.headers.get("Authorization") or "").strip()
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=_TOKEN_SALT)


def issue_token(user_id: int) -> str:
    return _serializer().dumps({"uid": int(user_id)})


def resolve_token(token: str) -> int | None:
    """User id carried by a valid, unexpired token; None otherwise."""
    max_age = int(current_app.config.get("TOKEN_MAX_AGE_SECONDS") or 0) or None
    try:
        data = _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        current_app.logger.info("Rejected expired bearer token")
        return None
    except BadSignature:
        return None
    if not isinstance(data, dict):
        return None
    try:
        return int(data.get("uid"))
    except (TypeError, ValueError):
        return None
