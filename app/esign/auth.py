from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from werkzeug.security import check_password_hash, generate_password_hash

from app.esign.db import db_session
from app.esign.models import User
from app.esign.security import bearer_token, ensure_csrf_token, issue_token, resolve_token
from app.esign.utils import normalize_email, utcnow

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds
_MIN_PASSWORD_LEN = 6


def _check_rate_limit(ip: str) -> bool:
    now = utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    recent = [t for t in _login_attempts.get(ip, ()) if t > cutoff]
    if not recent:
        _login_attempts.pop(ip, None)
        return False
    _login_attempts[ip] = recent
    return len(recent) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


def user_json(user: User) -> dict:
    return {"id": user.id, "username": user.username, "email": user.email}


def load_current_user() -> None:
    """
    Loads g.current_user from a bearer token, falling back to the signed session cookie.
    Also assigns a simple per-request request_id (for log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = uuid.uuid4().hex
    g.current_user = None
    g.auth_via = None
    if request.path.startswith(("/static/", "/health", "/healthz")):
        return

    token = bearer_token(request)
    if token:
        user_id = resolve_token(token)
        via = "token"
    else:
        user_id = session.get("user_id")
        via = "session"
    if not user_id:
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
    except Exception as e:
        current_app.logger.error("load_current_user DB error (request_id=%s): %s", g.request_id, e)
        user = None

    if not user or not user.is_active:
        if via == "session":
            session.pop("user_id", None)
        return
    g.current_user = user
    g.auth_via = via


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@bp.post("/register")
def register():
    data = _json_body()
    username = str(data.get("username") or "").strip()
    email = normalize_email(str(data.get("email") or ""))
    password = str(data.get("password") or "")

    if not username or not email or not password:
        return jsonify(error="username, email and password are required."), 400
    if len(password) < _MIN_PASSWORD_LEN:
        return jsonify(error=f"Password must be at least {_MIN_PASSWORD_LEN} characters."), 400

    s = db_session()
    exists = s.query(User).filter(or_(User.username == username, User.email == email)).first()
    if exists:
        return jsonify(error="Username or email is already registered."), 409

    user = User(username=username, email=email, password_hash=generate_password_hash(password), is_active=True)
    s.add(user)
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        return jsonify(error="Username or email is already registered."), 409

    current_app.logger.info("Registered user %s (request_id=%s)", user.id, getattr(g, "request_id", None))
    return jsonify(user=user_json(user), token=issue_token(user.id)), 201


@bp.post("/login")
def login():
    data = _json_body()
    email = normalize_email(str(data.get("email") or ""))
    password = str(data.get("password") or "")
    ip = request.remote_addr or "unknown"

    if not email or not password:
        return jsonify(error="email and password are required."), 400

    if _check_rate_limit(ip):
        return jsonify(error="Too many login attempts. Please wait 5 minutes."), 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            current_app.logger.warning("Login failed for %s (request_id=%s)", email, getattr(g, "request_id", None))
            return jsonify(error="Invalid email or password."), 401

        session["user_id"] = user.id
        _login_attempts.pop(ip, None)
        current_app.logger.info("User %s logged in (request_id=%s)", user.id, getattr(g, "request_id", None))
        return jsonify(user=user_json(user), token=issue_token(user.id)), 200
    except Exception:
        current_app.logger.exception("Login crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.post("/logout")
def logout():
    session.pop("user_id", None)
    return jsonify(ok=True)


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify(error="Not authenticated."), 401
    return jsonify(user=user_json(user), csrfToken=ensure_csrf_token())
