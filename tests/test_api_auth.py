"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> access guard ->
SessionManager/MemorySessionStore -> exception handlers -> response envelope.

Coverage:
  - register: 201, duplicate email 409, validation 422
  - login: token pair, no-store header, bad credentials 401
  - /me: 200 with a live session; 401 codes for each failure kind
  - refresh: rotation, single use, old access token revoked
  - logout: revokes immediately, idempotent, needs a Bearer header
  - session store outage: 503, never 401

Fixtures used (from conftest.py):
  - api_client: (client, token, uid) -- user "tester@example.com" / "testpass123"
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient

from auth.errors import StoreUnavailableError
from auth.tokens import TokenCodec, TokenKind


def _login(client: TestClient) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "testpass123"})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_creates_user(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        body = {"name": "New User", "email": "new.user@example.com", "password": "longenough1"}
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 201, resp.text
        data = resp.json()
        assert data["message"] == "User registered successfully"
        assert isinstance(data["id"], int)

    def test_register_duplicate_email(self, api_client: tuple[TestClient, str, int]) -> None:
        """Emails are unique case-insensitively."""
        client, _token, _uid = api_client
        body = {"name": "Dup", "email": "TESTER@example.com", "password": "longenough1"}
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_register_validation(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/register", json={"name": "X", "email": "not-an-email", "password": "short"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_register_multibyte_password_within_bcrypt_limit(self, api_client: tuple[TestClient, str, int]) -> None:
        """36 two-byte characters is exactly 72 bytes: accepted, and usable for login."""
        client, _token, _uid = api_client
        password = "é" * 36
        body = {"name": "Accents", "email": "accents@example.com", "password": password}
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 201, resp.text
        login = client.post("/api/v1/auth/login", json={"email": "accents@example.com", "password": password})
        assert login.status_code == 200

    def test_register_password_over_72_bytes(self, api_client: tuple[TestClient, str, int]) -> None:
        """40 characters but 80 bytes: rejected as invalid input, not a server error."""
        client, _token, _uid = api_client
        body = {"name": "Accents", "email": "too.long@example.com", "password": "é" * 40}
        resp = client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_returns_token_pair(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "testpass123"})
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["access_token"] != data["refresh_token"]

    def test_login_bad_password(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "tester@example.com", "password": "wrong-password"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_unknown_email(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "nobody@example.com", "password": "testpass123"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"


class TestMe:
    def test_me_with_live_session(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, uid = api_client
        resp = client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"user_id": uid, "email": "tester@example.com", "name": "Test User"}

    def test_me_without_header(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"
        assert resp.json()["error"]["code"] == "missing_credential"

    def test_me_wrong_scheme(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Token {token}"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "missing_credential"

    def test_me_garbage_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.get("/api/v1/auth/me", headers=_bearer("not.a.jwt"))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_signature"

    def test_me_refresh_token_refused(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        pair = _login(client)
        resp = client.get("/api/v1/auth/me", headers=_bearer(pair["refresh_token"]))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token_kind"

    def test_me_expired_token(self, api_client: tuple[TestClient, str, int], secret_key: str) -> None:
        """An expired token is reported as expired even while its session is live."""
        client, _token, uid = api_client
        session_id = client.app.state.session_manager.login(uid).session.session_id
        an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        stale = TokenCodec(secret_key, clock=lambda: an_hour_ago).mint(uid, session_id, TokenKind.access)
        resp = client.get("/api/v1/auth/me", headers=_bearer(stale))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"


class TestRefresh:
    def test_refresh_rotates(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        old = _login(client)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": old["refresh_token"]})
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        new = resp.json()

        assert client.get("/api/v1/auth/me", headers=_bearer(new["access_token"])).status_code == 200
        old_access = client.get("/api/v1/auth/me", headers=_bearer(old["access_token"]))
        assert old_access.status_code == 401
        assert old_access.json()["error"]["code"] == "session_expired"

    def test_refresh_token_single_use(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        pair = _login(client)
        first = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        second = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert first.status_code == 200
        assert second.status_code == 401
        assert second.json()["error"]["code"] == "session_expired"

    def test_access_token_cannot_refresh(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        pair = _login(client)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["access_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_token_kind"


class TestLogout:
    def test_logout_revokes_immediately(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        pair = _login(client)
        resp = client.post("/api/v1/auth/logout", headers=_bearer(pair["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Logged out successfully"

        me = client.get("/api/v1/auth/me", headers=_bearer(pair["access_token"]))
        assert me.status_code == 401
        assert me.json()["error"]["code"] == "session_expired"

        refresh = client.post("/api/v1/auth/refresh", json={"refresh_token": pair["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_is_idempotent(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        pair = _login(client)
        assert client.post("/api/v1/auth/logout", headers=_bearer(pair["access_token"])).status_code == 200
        assert client.post("/api/v1/auth/logout", headers=_bearer(pair["access_token"])).status_code == 200

    def test_logout_with_refresh_token(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        pair = _login(client)
        assert client.post("/api/v1/auth/logout", headers=_bearer(pair["refresh_token"])).status_code == 200
        assert client.get("/api/v1/auth/me", headers=_bearer(pair["access_token"])).status_code == 401

    def test_logout_without_header(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "missing_credential"

    def test_logout_leaves_other_sessions(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        pair = _login(client)
        client.post("/api/v1/auth/logout", headers=_bearer(pair["access_token"]))
        assert client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 200


class TestStoreOutage:
    def test_guard_outage_is_503(self, api_client: tuple[TestClient, str, int]) -> None:
        client, token, _uid = api_client
        with patch.object(client.app.state.session_store, "get", side_effect=StoreUnavailableError()):
            resp = client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "store_unavailable"

    def test_login_outage_is_503(self, api_client: tuple[TestClient, str, int]) -> None:
        client, _token, _uid = api_client
        with patch.object(client.app.state.session_store, "set", side_effect=StoreUnavailableError()):
            resp = client.post(
                "/api/v1/auth/login",
                json={"email": "tester@example.com", "password": "testpass123"},
            )
        assert resp.status_code == 503
        assert "access_token" not in resp.text
