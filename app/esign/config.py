import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    token_max_age_seconds: int
    audit_list_limit: int
    roster_order_policy: str
    signing_order: str
    max_signature_bytes: int
    debug_errors: bool


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


def _getbool(name: str, default: bool) -> bool:
    raw = _getenv(name).lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    env = _getenv("ENV", "development")
    is_production = env in ("prod", "production")
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=env,
        database_url=_getenv("DATABASE_URL", "sqlite:///esign.db"),
        token_max_age_seconds=_getint("TOKEN_MAX_AGE_SECONDS", 7 * 24 * 3600),
        audit_list_limit=_getint("AUDIT_LIST_LIMIT", 20),
        roster_order_policy=_getenv("ROSTER_ORDER_POLICY", "positional").lower(),
        signing_order=_getenv("SIGNING_ORDER", "parallel").lower(),
        max_signature_bytes=_getint("MAX_SIGNATURE_BYTES", 2 * 1024 * 1024),
        debug_errors=_getbool("DEBUG_ERRORS", not is_production),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    if s.roster_order_policy not in ("positional", "dense"):
        raise RuntimeError("ROSTER_ORDER_POLICY must be 'positional' or 'dense'.")
    if s.signing_order not in ("parallel", "sequential"):
        raise RuntimeError("SIGNING_ORDER must be 'parallel' or 'sequential'.")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "TOKEN_MAX_AGE_SECONDS": s.token_max_age_seconds,
        "AUDIT_LIST_LIMIT": s.audit_list_limit,
        "ROSTER_ORDER_POLICY": s.roster_order_policy,
        "SIGNING_ORDER": s.signing_order,
        "MAX_SIGNATURE_BYTES": s.max_signature_bytes,
        "DEBUG_ERRORS": s.debug_errors,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # signature images arrive as data URLs inside JSON bodies
        "MAX_CONTENT_LENGTH": 8 * 1024 * 1024,
    }
