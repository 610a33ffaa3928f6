"""
tests/test_api_auth.py -- Integration tests for /api/v1/auth/* through TestClient.

Covers:
  - every response carries X-Session-ID; unknown ids get a fresh session
  - register -> confirm -> login -> me -> sessions -> logout
  - failed login is a generic 401; repeated failures become 429 + Retry-After
  - password reset answers 202 whether or not the account exists
  - the error envelope for domain, validation and auth failures
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.dependencies import SESSION_HEADER

BASE = "/api/v1/auth"


def _register(client: TestClient, email: str = "alice@example.com", password: str = "secret") -> dict:
    resp = client.post(f"{BASE}/register", json={"name": "Alice", "email": email, "password": password})
    assert resp.status_code == 201, resp.text
    return resp.json()


def _register_confirmed(client: TestClient, email: str = "alice@example.com", password: str = "secret") -> dict:
    body = _register(client, email, password)
    resp = client.post(f"{BASE}/register/confirm", json={"token": body["token"]})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _login(client: TestClient, email: str = "alice@example.com", password: str = "secret", headers: dict | None = None):
    return client.post(f"{BASE}/login", json={"email": email, "password": password}, headers=headers)


# ---------------------------------------------------------------------------
# Session header
# ---------------------------------------------------------------------------


def test_me_without_header_creates_anonymous_session(api_client: TestClient):
    resp = api_client.get(f"{BASE}/me")
    assert resp.status_code == 200
    body = resp.json()
    assert body["authenticated"] is False
    assert body["user"] is None
    assert resp.headers[SESSION_HEADER] == body["session_id"]
    assert resp.headers["Cache-Control"] == "no-store"


def test_session_id_is_reused(api_client: TestClient):
    session_id = api_client.get(f"{BASE}/me").headers[SESSION_HEADER]
    resp = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: session_id})
    assert resp.headers[SESSION_HEADER] == session_id


def test_unknown_session_id_is_replaced(api_client: TestClient):
    resp = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: "0" * 64})
    assert resp.status_code == 200
    assert resp.headers[SESSION_HEADER] != "0" * 64


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def test_register_and_confirm(api_client: TestClient):
    body = _register(api_client, " Alice@Example.com ")
    assert body["email"] == "alice@example.com"
    assert body["token"]

    user = api_client.post(f"{BASE}/register/confirm", json={"token": body["token"]}).json()
    assert user["confirmed"] is True
    assert "password_hash" not in user


def test_register_duplicate_is_conflict(api_client: TestClient):
    _register(api_client)
    resp = api_client.post(f"{BASE}/register", json={"name": "A", "email": "ALICE@example.com", "password": "x"})
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "user_exists"


def test_register_blank_name(api_client: TestClient):
    resp = api_client.post(f"{BASE}/register", json={"name": "  ", "email": "a@b.com", "password": "x"})
    assert resp.status_code == 400
    assert resp.json()["error"] == {"code": "name_required", "message": "Name is required.", "detail": "name"}


def test_confirm_with_bad_token(api_client: TestClient):
    resp = api_client.post(f"{BASE}/register/confirm", json={"token": "wrong-token"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_token"


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


def test_full_login_flow(api_client: TestClient):
    _register_confirmed(api_client)
    anonymous_id = api_client.get(f"{BASE}/me").headers[SESSION_HEADER]

    resp = _login(api_client, headers={SESSION_HEADER: anonymous_id})
    assert resp.status_code == 200, resp.text
    body = resp.json()
    session_id = resp.headers[SESSION_HEADER]
    assert session_id != anonymous_id
    assert body["authenticated"] is True
    assert body["user"]["email"] == "alice@example.com"

    me = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: session_id}).json()
    assert me["authenticated"] is True

    sessions = api_client.get(f"{BASE}/sessions", headers={SESSION_HEADER: session_id}).json()
    assert len(sessions) == 1
    assert sessions[0]["current"] is True
    assert sessions[0]["id_prefix"] == session_id[:8]

    out = api_client.post(f"{BASE}/logout", headers={SESSION_HEADER: session_id})
    assert out.status_code == 200
    new_id = out.headers[SESSION_HEADER]
    assert new_id != session_id

    after = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: session_id})
    assert after.json()["authenticated"] is False
    assert after.headers[SESSION_HEADER] != session_id


def test_login_wrong_password_is_generic(api_client: TestClient):
    _register_confirmed(api_client)
    wrong_password = _login(api_client, password="nope")
    unknown_email = _login(api_client, email="nobody@example.com")
    assert wrong_password.status_code == unknown_email.status_code == 401
    assert wrong_password.json() == unknown_email.json()


def test_login_throttled_with_retry_after(api_client: TestClient, auth_service):
    _register_confirmed(api_client)
    for _ in range(auth_service.settings.login_max_attempts):
        assert _login(api_client, password="nope").status_code == 401

    resp = _login(api_client)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "limit_exceeded"
    assert 0 < int(resp.headers["Retry-After"]) <= auth_service.settings.login_window_seconds


def test_login_rejects_oversized_password(api_client: TestClient):
    resp = _login(api_client, password="x" * 65)
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "validation_error"


def test_sessions_requires_login(api_client: TestClient):
    resp = api_client.get(f"{BASE}/sessions")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert resp.headers[SESSION_HEADER]


def test_flash_is_returned_once(api_client: TestClient, auth_service):
    session_id = api_client.get(f"{BASE}/me").headers[SESSION_HEADER]
    session = auth_service.sessions.get(session_id)
    session.flash("info", "Welcome")
    auth_service.sessions.save(session)

    first = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: session_id}).json()
    second = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: session_id}).json()

    assert first["flash"] == {"type": "info", "message": "Welcome"}
    assert second["flash"] is None


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def test_password_reset_flow(api_client: TestClient):
    _register_confirmed(api_client)
    session_id = _login(api_client).headers[SESSION_HEADER]

    resp = api_client.post(f"{BASE}/password-reset", json={"email": "alice@example.com"})
    assert resp.status_code == 202
    token = resp.json()["token"]

    confirm = api_client.post(f"{BASE}/password-reset/confirm", json={"token": token, "password": "fresh"})
    assert confirm.status_code == 200

    assert _login(api_client).status_code == 401
    assert _login(api_client, password="fresh").status_code == 200
    stale = api_client.get(f"{BASE}/me", headers={SESSION_HEADER: session_id})
    assert stale.json()["authenticated"] is False


def test_password_reset_unknown_email_looks_the_same(api_client: TestClient):
    resp = api_client.post(f"{BASE}/password-reset", json={"email": "nobody@example.com"})
    assert resp.status_code == 202
    assert resp.json()["token"] is None
    assert resp.json()["message"].startswith("If the account exists")


def test_password_reset_bad_token(api_client: TestClient):
    resp = api_client.post(f"{BASE}/password-reset/confirm", json={"token": "nope", "password": "x"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "token_not_found"
