from __future__ import annotations

from datetime import datetime, timezone

from flask import Request


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime(timezone=False) columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def client_origin(req: Request) -> str:
    """
    Network origin of the caller.

    First hop of X-Forwarded-For, then X-Real-IP, then the socket address.
    """
    forwarded = (req.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (req.headers.get("X-Real-IP") or "").strip()
    if real_ip:
        return real_ip
    return req.remote_addr or "unknown"


def client_agent(req: Request) -> str:
    return (req.headers.get("User-Agent") or "").strip() or "unknown"


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()
