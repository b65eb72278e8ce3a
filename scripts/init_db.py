import argparse
import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.esign.models import Base, User  # noqa: E402
from app.esign.utils import normalize_email  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402


def _parse_users(raw: str) -> list[tuple[str, str]]:
    """"alice:alice@example.com,bob:bob@example.com" -> [(username, email), ...]"""
    out: list[tuple[str, str]] = []
    for item in (raw or "").split(","):
        item = item.strip()
        if not item:
            continue
        username, _, email = item.partition(":")
        if username.strip() and email.strip():
            out.append((username.strip(), normalize_email(email)))
    return out


def seed_only(*, database_url: str | None = None, create_tables: bool = False) -> None:
    """
    Seed demo users in an idempotent way.
    Does NOT overwrite an existing user's password.
    """
    users = _parse_users(os.environ.get("SEED_USERS") or "")
    password = os.environ.get("SEED_PASSWORD") or "change-me"

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///esign.db").strip()

    with script_session(db_url) as s:
        if create_tables:
            Base.metadata.create_all(bind=s.get_bind())

        for username, email in users:
            user = s.query(User).filter(User.email == email).one_or_none()
            if not user:
                s.add(User(username=username, email=email, password_hash=generate_password_hash(password), is_active=True))

    print("Initialized database (seed_only).")
    print(f"Seeded users: {', '.join(e for _, e in users) or '(none; set SEED_USERS)'}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed demo users.")
    parser.add_argument("--create-tables", action="store_true", help="create tables without Alembic (local dev only)")
    args = parser.parse_args()
    seed_only(database_url=None, create_tables=args.create_tables)


if __name__ == "__main__":
    main()
