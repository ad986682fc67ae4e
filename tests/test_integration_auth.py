from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

import careauth.app as app_module
from careauth.service.runtime import get_runtime
from careauth.storage.models import TokenType


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register_and_verify(client, email="nurse@example.com", password="Str0ng!Pass"):
    resp = client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "first_name": "Ada", "last_name": "Lee"},
    )
    assert resp.status_code == 201, resp.text
    user_id = resp.json()["data"]["user_id"]
    now = datetime.now(timezone.utc)
    token = next(
        t.token
        for t in get_runtime().store.list_verification_tokens(
            user_id, TokenType.EMAIL_VERIFICATION
        )
        if t.is_usable(now)
    )
    verified = client.post("/v1/auth/verify-email", json={"token": token})
    assert verified.status_code == 200
    return user_id


def _login(client, email="nurse@example.com", password="Str0ng!Pass"):
    resp = client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, "device_id": "ws-1", "device_type": "web"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["tokens"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def test_register_returns_envelope(client):
    resp = client.post(
        "/v1/auth/register",
        json={"email": "new@example.com", "password": "Str0ng!Pass"},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["errors"] == []
    assert body["data"]["account_status"] == "Pending"
    assert body["data"]["requires_email_verification"] is True
    assert "timestamp" in body and body["request_id"]


def test_register_rejects_malformed_email(client):
    resp = client.post(
        "/v1/auth/register", json={"email": "not-an-email", "password": "Str0ng!Pass"}
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    assert any(e.startswith("email:") for e in body["errors"])


def test_register_duplicate_conflicts(client):
    _register_and_verify(client)
    resp = client.post(
        "/v1/auth/register", json={"email": "NURSE@example.com", "password": "Str0ng!Pass"}
    )
    assert resp.status_code == 409
    assert resp.json()["success"] is False


def test_login_and_protected_routes(client):
    user_id = _register_and_verify(client)
    tokens = _login(client)

    profile = client.get("/v1/auth/profile", headers=_auth(tokens))
    assert profile.status_code == 200
    assert profile.json()["data"]["user_id"] == user_id

    sessions = client.get("/v1/auth/sessions", headers=_auth(tokens))
    listed = sessions.json()["data"]["sessions"]
    assert len(listed) == 1
    assert listed[0]["is_current"] is True
    assert listed[0]["device_id"] == "ws-1"


def test_wrong_password_envelope(client):
    _register_and_verify(client)
    resp = client.post(
        "/v1/auth/login", json={"email": "nurse@example.com", "password": "Wrong!Pass1"}
    )
    assert resp.status_code == 401
    body = resp.json()
    assert body["message"] == "Invalid email or password"
    assert body["data"] is None


def test_protected_route_requires_bearer(client):
    assert client.get("/v1/auth/profile").status_code == 401
    bad = client.get("/v1/auth/profile", headers={"Authorization": "Bearer nope"})
    assert bad.status_code == 401
    assert bad.json()["success"] is False
    basic = client.get("/v1/auth/profile", headers={"Authorization": "Basic abc"})
    assert basic.status_code == 401


def test_refresh_then_logout(client):
    _register_and_verify(client)
    tokens = _login(client)

    refreshed = client.post(
        "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
    )
    assert refreshed.status_code == 200
    new_tokens = refreshed.json()["data"]
    assert new_tokens["refresh_token"] != tokens["refresh_token"]

    out = client.post("/v1/auth/logout", headers=_auth(new_tokens))
    assert out.status_code == 200
    assert out.json()["data"] == {"sessions_revoked": 1}

    assert client.get("/v1/auth/profile", headers=_auth(new_tokens)).status_code == 401
    again = client.post(
        "/v1/auth/refresh-token", json={"refresh_token": new_tokens["refresh_token"]}
    )
    assert again.status_code == 401


def test_change_password_keeps_current_session(client):
    _register_and_verify(client)
    tokens = _login(client)
    _login(client)
    resp = client.post(
        "/v1/auth/change-password",
        headers=_auth(tokens),
        json={"current_password": "Str0ng!Pass", "new_password": "N3w!Password"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == {"sessions_revoked": 1}
    assert client.get("/v1/auth/sessions", headers=_auth(tokens)).status_code == 200


def test_check_email_reports_format(client):
    ok = client.get("/v1/auth/check-email", params={"email": "a@example.com"})
    assert ok.status_code == 200
    assert ok.json()["data"] == {"valid_format": True}
    bad = client.get("/v1/auth/check-email", params={"email": "nope"})
    assert bad.json()["data"] == {"valid_format": False}


def test_forgot_password_is_uniform(client):
    _register_and_verify(client)
    known = client.post("/v1/auth/forgot-password", json={"email": "nurse@example.com"})
    unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
    assert known.status_code == unknown.status_code == 200
    assert known.json()["message"] == unknown.json()["message"]


def test_security_headers_and_request_id(client):
    resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert "no-store" in resp.headers["Cache-Control"]


def test_healthz_reports_memory_store(client):
    body = client.get("/healthz").json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["version"] == app_module.__version__


def test_tampered_bearer_with_non_ascii_signature_is_401(client):
    _register_and_verify(client)
    head, body, _ = _login(client)["access_token"].split(".")
    resp = client.get(
        "/v1/auth/profile",
        headers={"Authorization": f"Bearer {head}.{body}.".encode() + b"\xe9\xe9"},
    )
    assert resp.status_code == 401
    assert resp.json()["success"] is False
