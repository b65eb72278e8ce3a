from datetime import timedelta

import pytest

from app.esign import auth, create_app
from app.esign.models import Base


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    auth._login_attempts.clear()

    app = create_app()

    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    return app.test_client()


def _register(client, username="alice", email="alice@example.com", password="secret1"):
    return client.post("/api/auth/register", json={"username": username, "email": email, "password": password})


def test_health_ok(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True

    r = client.get("/healthz")
    assert r.status_code == 200


def test_register_login_and_me(client):
    r = _register(client, email="Alice@Example.com")
    assert r.status_code == 201
    assert r.json["user"]["email"] == "alice@example.com"
    token = r.json["token"]

    r = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200
    assert r.json["user"]["username"] == "alice"

    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret1"})
    assert r.status_code == 200
    assert r.json["token"]

    # Login also establishes a cookie session.
    r = client.get("/api/auth/me")
    assert r.status_code == 200
    assert r.json["csrfToken"]

    client.post("/api/auth/logout")
    r = client.get("/api/auth/me")
    assert r.status_code == 401


def test_register_validation_and_conflicts(client):
    r = client.post("/api/auth/register", json={"username": "bob", "email": "", "password": "secret1"})
    assert r.status_code == 400

    r = _register(client, password="123")
    assert r.status_code == 400

    assert _register(client).status_code == 201
    r = _register(client, username="other")
    assert r.status_code == 409


def test_bad_credentials_and_rate_limit(client):
    _register(client)
    for _ in range(5):
        r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong-pw"})
        assert r.status_code == 401

    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret1"})
    assert r.status_code == 429


def test_invalid_or_missing_token_is_unauthenticated(client):
    r = client.get("/api/documents")
    assert r.status_code == 401

    r = client.get("/api/documents", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401


def test_login_attempts_are_forgotten(client, monkeypatch):
    _register(client)
    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong-pw"})
    assert r.status_code == 401
    assert len(auth._login_attempts["127.0.0.1"]) == 1

    later = auth.utcnow() + timedelta(seconds=301)
    monkeypatch.setattr(auth, "utcnow", lambda: later)
    assert auth._check_rate_limit("127.0.0.1") is False
    assert "127.0.0.1" not in auth._login_attempts

    r = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "secret1"})
    assert r.status_code == 200
    assert "127.0.0.1" not in auth._login_attempts
