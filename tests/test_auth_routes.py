"""
tests/test_auth_routes.py -- Integration tests for the auth and admin REST routes.

These tests exercise the full stack: request guard middleware -> FastAPI
routing -> dependency injection -> AuthGateway -> UserStore / LoginThrottle ->
response model serialization and the error envelope.

Coverage:
  - Member login: 200 + session cookie flags, 401 wrong secret, 400 short
    token, 422 malformed body, 429 + Retry-After after five failures
  - Admin login: adminId alias, member account refused with the same 401
  - Logout clears the cookie with or without a session
  - /auth/me and /auth/change-token
  - Admin routes: create (201/409), list (no hashes), reset-token + audit log,
    403 for members and 401 without a session

Fixtures used (from conftest.py):
  - client: module TestClient (follow_redirects=False) with an empty cookie jar
  - seed: member/admin ids, pre-signed session tokens, the stores

Tests that fail logins on purpose send their own X-Forwarded-For, which is
the identity the throttle keys on (conftest trusts the "testclient" peer as a
proxy), so they never lock each other out.
"""

from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from auth.hashing import hash_secret, verify_secret
from auth.models import User
from core.config import get_settings

MEMBER_NISN = "99887766"
MEMBER_SECRET = "verysecure"
ADMIN_ID = "admin12345"
ADMIN_SECRET = "admin-password-1"


def _fresh_ip() -> dict[str, str]:
    host = uuid.uuid4().hex
    return {"X-Forwarded-For": f"2001:db8::{host[:4]}:{host[4:8]}, 10.0.0.1"}


def _fresh_user(seed, secret: str = "original-secret") -> User:
    nisn = str(uuid.uuid4().int)[:10]
    user = User(nisn=nisn, name="Fresh", token_hash=hash_secret(secret))
    user.id = seed.user_store.create_user(user)
    return user


class TestMemberLogin:
    """POST /api/v1/auth/login"""

    def test_login_success_sets_cookie(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": MEMBER_SECRET}, headers=_fresh_ip())
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Login successful"
        assert data["user"]["nisn"] == MEMBER_NISN
        assert data["user"]["is_admin"] is False
        assert data["expires_in"] == 28800
        assert "token_hash" not in resp.text

        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("session=")
        assert "HttpOnly" in cookie
        assert "SameSite=strict" in cookie
        assert "Max-Age=28800" in cookie
        assert resp.headers["cache-control"] == "no-store"

    def test_cookie_authenticates_follow_up_requests(self, client: TestClient) -> None:
        client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": MEMBER_SECRET}, headers=_fresh_ip())
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["nisn"] == MEMBER_NISN

    def test_wrong_secret_401(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": "wrongsecret"}, headers=_fresh_ip())
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_credentials"
        assert "set-cookie" not in resp.headers

    def test_unknown_identity_same_response(self, client: TestClient) -> None:
        unknown = client.post("/api/v1/auth/login", json={"nisn": "00000000", "token": "wrongsecret"}, headers=_fresh_ip())
        wrong = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": "wrongsecret"}, headers=_fresh_ip())
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_short_token_400(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": "short"}, headers=_fresh_ip())
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "at least 8" in error["message"]

    def test_missing_field_422(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_sixth_attempt_rate_limited(self, client: TestClient) -> None:
        headers = _fresh_ip()
        for _ in range(5):
            resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": "wrongsecret"}, headers=headers)
            assert resp.status_code == 401
        resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": MEMBER_SECRET}, headers=headers)
        assert resp.status_code == 429
        error = resp.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["retry_after"] > 0
        assert int(resp.headers["retry-after"]) == error["retry_after"]
        assert "set-cookie" not in resp.headers

    def test_rotating_forwarded_for_from_untrusted_peer_still_locks(self, client: TestClient, seed, monkeypatch) -> None:
        """Without a trusted proxy, X-Forwarded-For is ignored and the peer itself is counted."""
        monkeypatch.setattr(get_settings(), "trusted_proxies", [])
        try:
            for i in range(5):
                resp = client.post(
                    "/api/v1/auth/login",
                    json={"nisn": MEMBER_NISN, "token": "wrongsecret"},
                    headers={"X-Forwarded-For": f"10.9.9.{i}"},
                )
                assert resp.status_code == 401
            resp = client.post(
                "/api/v1/auth/login",
                json={"nisn": MEMBER_NISN, "token": MEMBER_SECRET},
                headers={"X-Forwarded-For": "10.9.9.99"},
            )
            assert resp.status_code == 429
        finally:
            seed.throttle.reset("testclient")

    def test_lockout_is_per_client(self, client: TestClient) -> None:
        locked = _fresh_ip()
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": "wrongsecret"}, headers=locked)
        resp = client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": MEMBER_SECRET}, headers=_fresh_ip())
        assert resp.status_code == 200


class TestAdminLogin:
    """POST /api/v1/admin/login"""

    def test_admin_login_with_camel_case_id(self, client: TestClient) -> None:
        resp = client.post("/api/v1/admin/login", json={"adminId": ADMIN_ID, "password": ADMIN_SECRET}, headers=_fresh_ip())
        assert resp.status_code == 200
        data = resp.json()
        assert data["message"] == "Admin login successful"
        assert data["user"]["is_admin"] is True
        assert "session=" in resp.headers["set-cookie"]

    def test_admin_login_with_snake_case_id(self, client: TestClient) -> None:
        resp = client.post("/api/v1/admin/login", json={"admin_id": ADMIN_ID, "password": ADMIN_SECRET}, headers=_fresh_ip())
        assert resp.status_code == 200

    def test_member_refused_like_unknown(self, client: TestClient) -> None:
        member = client.post("/api/v1/admin/login", json={"adminId": MEMBER_NISN, "password": MEMBER_SECRET}, headers=_fresh_ip())
        unknown = client.post("/api/v1/admin/login", json={"adminId": "nobody123", "password": MEMBER_SECRET}, headers=_fresh_ip())
        assert member.status_code == unknown.status_code == 401
        assert member.json() == unknown.json()

    def test_admin_session_reaches_admin_api(self, client: TestClient) -> None:
        client.post("/api/v1/admin/login", json={"adminId": ADMIN_ID, "password": ADMIN_SECRET}, headers=_fresh_ip())
        assert client.get("/api/v1/admin/users").status_code == 200


class TestLogout:
    def test_logout_clears_cookie(self, client: TestClient) -> None:
        client.post("/api/v1/auth/login", json={"nisn": MEMBER_NISN, "token": MEMBER_SECRET}, headers=_fresh_ip())
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Logged out"}
        assert "Max-Age=0" in resp.headers["set-cookie"]

    def test_logout_without_session(self, client: TestClient) -> None:
        first = client.post("/api/v1/auth/logout")
        second = client.post("/api/v1/auth/logout")
        assert first.status_code == second.status_code == 200
        assert first.headers["set-cookie"] == second.headers["set-cookie"]


class TestSessionRoutes:
    def test_me_requires_session(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me_with_bearer(self, client: TestClient, seed) -> None:
        resp = client.get("/api/v1/auth/me", headers=seed.bearer(seed.member_token))
        assert resp.status_code == 200
        data = resp.json()
        assert data == {
            "id": seed.member_id,
            "nisn": MEMBER_NISN,
            "is_admin": False,
            "expires_at": data["expires_at"],
        }

    def test_tampered_bearer_401(self, client: TestClient, seed) -> None:
        header, payload, signature = seed.member_token.split(".")
        middle = len(payload) // 2
        flipped = "A" if payload[middle] != "A" else "B"
        token = ".".join([header, payload[:middle] + flipped + payload[middle + 1 :], signature])
        assert client.get("/api/v1/auth/me", headers=seed.bearer(token)).status_code == 401

    def test_change_token(self, client: TestClient, seed) -> None:
        user = _fresh_user(seed)
        token = client.post(
            "/api/v1/auth/login", json={"nisn": user.nisn, "token": "original-secret"}, headers=_fresh_ip()
        ).cookies["session"]
        client.cookies.clear()
        resp = client.patch(
            "/api/v1/auth/change-token",
            json={"currentToken": "original-secret", "newToken": "rotated-secret"},
            headers=seed.bearer(token),
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Token updated successfully"}
        assert verify_secret("rotated-secret", seed.user_store.get_by_id(user.id).token_hash)

    def test_change_token_wrong_current(self, client: TestClient, seed) -> None:
        user = _fresh_user(seed)
        token = client.post(
            "/api/v1/auth/login", json={"nisn": user.nisn, "token": "original-secret"}, headers=_fresh_ip()
        ).cookies["session"]
        client.cookies.clear()
        resp = client.patch(
            "/api/v1/auth/change-token",
            json={"currentToken": "not-the-secret", "newToken": "rotated-secret"},
            headers=seed.bearer(token),
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Current token is incorrect"
        assert verify_secret("original-secret", seed.user_store.get_by_id(user.id).token_hash)

    def test_change_token_guessing_is_throttled(self, client: TestClient, seed) -> None:
        user = _fresh_user(seed)
        token = client.post(
            "/api/v1/auth/login", json={"nisn": user.nisn, "token": "original-secret"}, headers=_fresh_ip()
        ).cookies["session"]
        client.cookies.clear()
        for _ in range(5):
            resp = client.patch(
                "/api/v1/auth/change-token",
                json={"currentToken": "guessed-secret", "newToken": "rotated-secret"},
                headers={**seed.bearer(token), **_fresh_ip()},
            )
            assert resp.status_code == 401
        resp = client.patch(
            "/api/v1/auth/change-token",
            json={"currentToken": "original-secret", "newToken": "rotated-secret"},
            headers=seed.bearer(token),
        )
        assert resp.status_code == 429
        assert int(resp.headers["retry-after"]) > 0
        assert verify_secret("original-secret", seed.user_store.get_by_id(user.id).token_hash)

    def test_change_token_requires_session(self, client: TestClient) -> None:
        resp = client.patch(
            "/api/v1/auth/change-token", json={"currentToken": "original-secret", "newToken": "rotated-secret"}
        )
        assert resp.status_code == 401


class TestAdminRoutes:
    """/api/v1/admin/* -- every route is admin-only."""

    def test_create_user(self, client: TestClient, seed) -> None:
        nisn = str(uuid.uuid4().int)[:10]
        resp = client.post(
            "/api/v1/admin/users",
            json={"nisn": nisn, "token": "initial-secret", "name": "Budi"},
            headers=seed.bearer(seed.admin_token),
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["message"] == "User created"
        assert data["user"]["nisn"] == nisn
        assert data["user"]["is_admin"] is False
        assert "token" not in data["user"]

        login = client.post("/api/v1/auth/login", json={"nisn": nisn, "token": "initial-secret"}, headers=_fresh_ip())
        assert login.status_code == 200

    def test_create_duplicate_409(self, client: TestClient, seed) -> None:
        resp = client.post(
            "/api/v1/admin/users",
            json={"nisn": MEMBER_NISN, "token": "initial-secret"},
            headers=seed.bearer(seed.admin_token),
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_create_short_token_400(self, client: TestClient, seed) -> None:
        resp = client.post(
            "/api/v1/admin/users",
            json={"nisn": "12121212", "token": "short"},
            headers=seed.bearer(seed.admin_token),
        )
        assert resp.status_code == 400

    def test_list_users_hides_hashes(self, client: TestClient, seed) -> None:
        resp = client.get("/api/v1/admin/users", headers=seed.bearer(seed.admin_token))
        assert resp.status_code == 200
        nisns = [u["nisn"] for u in resp.json()]
        assert MEMBER_NISN in nisns and ADMIN_ID in nisns
        assert "$2b$" not in resp.text
        assert "token_hash" not in resp.text

    def test_reset_token_is_audited(self, client: TestClient, seed) -> None:
        user = _fresh_user(seed)
        resp = client.patch(
            "/api/v1/admin/reset-token",
            json={"userId": user.id, "newToken": "reset-secret"},
            headers=seed.bearer(seed.admin_token),
        )
        assert resp.status_code == 200
        assert resp.json() == {"message": "Token reset"}
        assert verify_secret("reset-secret", seed.user_store.get_by_id(user.id).token_hash)

        logs = client.get("/api/v1/admin/audit-logs?limit=1", headers=seed.bearer(seed.admin_token)).json()
        assert len(logs) == 1
        assert logs[0]["action"] == "token_reset"
        assert logs[0]["actor_id"] == seed.admin_id
        assert logs[0]["metadata"] == {"userId": user.id}

    def test_reset_unknown_user_400(self, client: TestClient, seed) -> None:
        resp = client.patch(
            "/api/v1/admin/reset-token",
            json={"userId": "missing", "newToken": "reset-secret"},
            headers=seed.bearer(seed.admin_token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["message"] == "User not found"

    def test_audit_log_limit_validated(self, client: TestClient, seed) -> None:
        resp = client.get("/api/v1/admin/audit-logs?limit=0", headers=seed.bearer(seed.admin_token))
        assert resp.status_code == 422

    def test_member_gets_403(self, client: TestClient, seed) -> None:
        for method, path in [
            ("get", "/api/v1/admin/users"),
            ("post", "/api/v1/admin/users"),
            ("patch", "/api/v1/admin/reset-token"),
            ("get", "/api/v1/admin/audit-logs"),
        ]:
            resp = client.request(method.upper(), path, headers=seed.bearer(seed.member_token))
            assert resp.status_code == 403, path
            assert resp.json()["error"]["code"] == "forbidden"

    def test_no_session_gets_401(self, client: TestClient) -> None:
        for path in ["/api/v1/admin/users", "/api/v1/admin/audit-logs"]:
            resp = client.get(path)
            assert resp.status_code == 401, path
            assert resp.json()["error"]["code"] == "unauthorized"
