"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth and /security routes.

Runs through the real ASGI stack with the api_client fixture (patched
lifespan, file-backed test store). Each test logs in for itself so tests
do not depend on each other's tokens.

Coverage:
  - login / refresh / logout flows and the shared error envelope
  - reuse of a rotated refresh token answers 401 session_revoked
  - session listing and per-session revocation scoped to the owner
  - admin-only user management through the protected-account guard
  - admin-only session audit query
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from auth.models import Credential
from auth.tokens import hash_password

ADMIN_PASSWORD = "admin-pass-123"
ALICE_PASSWORD = "correct horse"


def _login(client: TestClient, email: str, password: str) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    """POST /api/v1/auth/login."""

    def test_login_returns_token_pair(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": ALICE_PASSWORD})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["refresh_token"]
        assert data["session_id"]
        assert data["user"]["email"] == "alice@example.com"
        assert data["user"]["protected"] is False

    def test_wrong_password_and_unknown_email_look_identical(self, api_client) -> None:
        client, _, _ = api_client
        wrong = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": "nope"})
        unknown = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "nope"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"

    def test_oversized_password_rejected(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": "x" * 73})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"


class TestRefreshAndLogout:
    """POST /api/v1/auth/refresh, /logout, /logout-all."""

    def test_refresh_rotates(self, api_client) -> None:
        client, _, _ = api_client
        first = _login(client, "alice@example.com", ALICE_PASSWORD)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        second = resp.json()
        assert second["refresh_token"] != first["refresh_token"]
        assert second["session_id"] != first["session_id"]

    def test_reused_refresh_token_rejected(self, api_client) -> None:
        client, _, _ = api_client
        first = _login(client, "alice@example.com", ALICE_PASSWORD)
        rotated = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]}).json()
        replay = client.post("/api/v1/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "session_revoked"
        # The replay also burned the branch that descended from the stolen token.
        follow_up = client.post("/api/v1/auth/refresh", json={"refresh_token": rotated["refresh_token"]})
        assert follow_up.status_code == 401

    def test_unknown_refresh_token(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "never-issued"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_logout_is_idempotent(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _login(client, "alice@example.com", ALICE_PASSWORD)
        body = {"refresh_token": tokens["refresh_token"]}
        assert client.post("/api/v1/auth/logout", json=body).status_code == 204
        assert client.post("/api/v1/auth/logout", json=body).status_code == 204
        assert client.post("/api/v1/auth/refresh", json=body).status_code == 401

    def test_logout_all(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _login(client, "alice@example.com", ALICE_PASSWORD)
        _login(client, "alice@example.com", ALICE_PASSWORD)
        resp = client.post("/api/v1/auth/logout-all", headers=_bearer(tokens["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["revoked_sessions"] >= 2
        listing = client.get("/api/v1/auth/sessions", headers=_bearer(tokens["access_token"])).json()
        assert listing["count"] == 0


class TestSessions:
    """GET /api/v1/auth/sessions and POST /api/v1/auth/revoke-session."""

    def test_list_and_revoke_own_session(self, api_client) -> None:
        client, _, _ = api_client
        tokens = _login(client, "alice@example.com", ALICE_PASSWORD)
        headers = _bearer(tokens["access_token"])
        listing = client.get("/api/v1/auth/sessions", headers=headers).json()
        assert tokens["session_id"] in [row["id"] for row in listing["data"]]
        assert listing["max_active_sessions"] == 5
        assert listing["count"] <= 5

        resp = client.post("/api/v1/auth/revoke-session", json={"session_id": tokens["session_id"]}, headers=headers)
        assert resp.status_code == 204
        listing = client.get("/api/v1/auth/sessions", headers=headers).json()
        assert tokens["session_id"] not in [row["id"] for row in listing["data"]]

    def test_cannot_revoke_someone_elses_session(self, api_client) -> None:
        client, admin_token, _ = api_client
        alice = _login(client, "alice@example.com", ALICE_PASSWORD)
        resp = client.post(
            "/api/v1/auth/revoke-session",
            json={"session_id": alice["session_id"]},
            headers=_bearer(admin_token),
        )
        assert resp.status_code == 404

    def test_requires_authentication(self, api_client) -> None:
        client, _, _ = api_client
        resp = client.get("/api/v1/auth/sessions")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_me(self, api_client) -> None:
        client, _, admin_id = api_client
        tokens = _login(client, "admin@example.com", ADMIN_PASSWORD)
        data = client.get("/api/v1/auth/me", headers=_bearer(tokens["access_token"])).json()
        assert data["id"] == admin_id
        assert data["role"] == "ADMIN"


class TestUserManagement:
    """Admin user routes guarded by the protected-account invariant."""

    @pytest.fixture(scope="class")
    def bob_id(self, api_client) -> int:
        client, _, _ = api_client
        bob = client.app.state.user_store.create_credential(
            Credential(email="bob@example.com", password_hash=hash_password("bob-password"), name="Bob", role="USER")
        )
        return bob.id

    def test_non_admin_forbidden(self, api_client) -> None:
        client, _, _ = api_client
        alice = _login(client, "alice@example.com", ALICE_PASSWORD)
        resp = client.get("/api/v1/auth/users", headers=_bearer(alice["access_token"]))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_patch_unprotected(self, api_client, bob_id) -> None:
        client, admin_token, _ = api_client
        resp = client.patch(f"/api/v1/auth/users/{bob_id}", json={"role": "OPERATOR"}, headers=_bearer(admin_token))
        assert resp.status_code == 200
        assert resp.json()["role"] == "OPERATOR"

    def test_patch_rejects_protected_field(self, api_client, bob_id) -> None:
        client, admin_token, _ = api_client
        resp = client.patch(f"/api/v1/auth/users/{bob_id}", json={"protected": False}, headers=_bearer(admin_token))
        assert resp.status_code == 422

    def test_patch_empty_body(self, api_client, bob_id) -> None:
        client, admin_token, _ = api_client
        resp = client.patch(f"/api/v1/auth/users/{bob_id}", json={}, headers=_bearer(admin_token))
        assert resp.status_code == 400

    def test_protect_then_guarded_changes_refused(self, api_client, bob_id) -> None:
        client, admin_token, _ = api_client
        headers = _bearer(admin_token)
        resp = client.post(f"/api/v1/auth/users/{bob_id}/protect", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["protected"] is True

        again = client.post(f"/api/v1/auth/users/{bob_id}/protect", headers=headers)
        assert again.status_code == 200

        for change in ({"role": "ADMIN"}, {"password": "new-password-1"}):
            resp = client.patch(f"/api/v1/auth/users/{bob_id}", json=change, headers=headers)
            assert resp.status_code == 403
            assert resp.json()["error"]["code"] == "protected_account"

        resp = client.patch(f"/api/v1/auth/users/{bob_id}", json={"name": "Robert"}, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["name"] == "Robert"

        resp = client.delete(f"/api/v1/auth/users/{bob_id}", headers=headers)
        assert resp.status_code == 403
        assert _login(client, "bob@example.com", "bob-password")["user"]["protected"] is True

    def test_delete_unprotected_revokes_sessions(self, api_client) -> None:
        client, admin_token, _ = api_client

        carol = client.app.state.user_store.create_credential(
            Credential(email="carol@example.com", password_hash=hash_password("carol-password"), name="C", role="USER")
        )
        tokens = _login(client, "carol@example.com", "carol-password")
        resp = client.delete(f"/api/v1/auth/users/{carol.id}", headers=_bearer(admin_token))
        assert resp.status_code == 204
        refresh = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code in (401, 404)
        assert client.delete(f"/api/v1/auth/users/{carol.id}", headers=_bearer(admin_token)).status_code == 404

    def test_cannot_delete_self(self, api_client) -> None:
        client, admin_token, admin_id = api_client
        resp = client.delete(f"/api/v1/auth/users/{admin_id}", headers=_bearer(admin_token))
        assert resp.status_code == 400

    def test_unknown_user(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.patch("/api/v1/auth/users/99999", json={"name": "X"}, headers=_bearer(admin_token))
        assert resp.status_code == 404


class TestSessionAudit:
    """GET /api/v1/security/session-audit."""

    def test_admin_sees_filtered_events(self, api_client) -> None:
        client, admin_token, _ = api_client
        client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": "bad"})
        resp = client.get(
            "/api/v1/security/session-audit",
            params={"event_type": "login_failed", "limit": 5},
            headers=_bearer(admin_token),
        )
        assert resp.status_code == 200
        body = resp.json()
        rows = body["data"]
        assert 1 <= len(rows) <= 5
        assert body["count"] >= len(rows)
        assert body["summary"]["login_failure"] == body["count"]
        assert all(r["event_type"] == "login_failed" for r in rows)
        assert rows[0]["metadata"]["reason"] == "invalid_password"

    def test_session_filter_and_ascending_order(self, api_client) -> None:
        client, admin_token, _ = api_client
        tokens = _login(client, "alice@example.com", ALICE_PASSWORD)
        client.post("/api/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        rows = client.get(
            "/api/v1/security/session-audit",
            params={"session_id": tokens["session_id"], "sort_order": "asc"},
            headers=_bearer(admin_token),
        ).json()["data"]
        assert [r["event_type"] for r in rows] == ["created", "revoked"]

    def test_non_admin_forbidden(self, api_client) -> None:
        client, _, _ = api_client
        alice = _login(client, "alice@example.com", ALICE_PASSWORD)
        resp = client.get("/api/v1/security/session-audit", headers=_bearer(alice["access_token"]))
        assert resp.status_code == 403

    def test_bad_event_type(self, api_client) -> None:
        client, admin_token, _ = api_client
        resp = client.get(
            "/api/v1/security/session-audit", params={"event_type": "bogus"}, headers=_bearer(admin_token)
        )
        assert resp.status_code == 422
