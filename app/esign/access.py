from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.esign.models import User


def current_user() -> User | None:
    user: User | None = getattr(g, "current_user", None)
    if not user or not user.is_active:
        return None
    return user


def require_user(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Reject anonymous callers with a JSON 401; the identity itself is trusted as resolved."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if current_user() is None:
            return jsonify(error="Not authenticated."), 401
        return fn(*args, **kwargs)

    return wrapped
