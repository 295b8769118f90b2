"""
tests/test_api_security.py -- Integration tests for the /api/v1/security routes.

Coverage:
  - login stamps client IP (X-Forwarded-For aware) and User-Agent on audit rows
  - paginated audit query: count, summary, page bounds, sorting
  - CSV export and its meta endpoint
  - login metrics, snapshot creation and history
  - every route is admin-only
"""

from __future__ import annotations

import csv
import io

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from auth.dependencies import client_context
from core.config import Settings

ALICE_PASSWORD = "correct horse"


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _failed_login(client: TestClient, ip: str, email: str = "alice@example.com") -> None:
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": "wrong"},
        headers={"X-Forwarded-For": f"{ip}, 10.0.0.1", "User-Agent": "audit-tests/1.0"},
    )
    assert resp.status_code == 401


@pytest.fixture(scope="module")
def seeded(api_client):
    """Three failed logins from 203.0.113.7 and one successful login from 198.51.100.2."""
    client, token, _ = api_client
    for _ in range(3):
        _failed_login(client, "203.0.113.7")
    resp = client.post(
        "/api/v1/auth/login",
        json={"email": "alice@example.com", "password": ALICE_PASSWORD},
        headers={"X-Forwarded-For": "198.51.100.2", "User-Agent": "audit-tests/1.0"},
    )
    assert resp.status_code == 200
    return client, token


def _request(headers: dict, host: str = "192.0.2.1") -> Request:
    raw = [(name.lower().encode(), value.encode()) for name, value in headers.items()]
    return Request({"type": "http", "headers": raw, "client": (host, 50000)})


class TestClientContext:
    def test_first_forwarded_hop_wins(self) -> None:
        ctx = client_context(_request({"X-Forwarded-For": " 203.0.113.7 , 10.0.0.1", "User-Agent": "ua"}))
        assert ctx.ip_address == "203.0.113.7"
        assert ctx.user_agent == "ua"

    def test_untrusted_forwarded_for_ignored(self, monkeypatch) -> None:
        settings = Settings(secret_key="k" * 32, trust_forwarded_for=False)
        monkeypatch.setattr("auth.dependencies.get_settings", lambda: settings)
        ctx = client_context(_request({"X-Forwarded-For": "203.0.113.7"}))
        assert ctx.ip_address == "192.0.2.1"
        assert ctx.user_agent is None

    def test_login_records_forwarded_ip_and_user_agent(self, seeded) -> None:
        client, token = seeded
        body = client.get(
            "/api/v1/security/session-audit",
            params={"ip_address": "203.0.113.7"},
            headers=_bearer(token),
        ).json()
        assert body["count"] == 3
        row = body["data"][0]
        assert row["event_type"] == "login_failed"
        assert row["success"] is False
        assert row["user_email"] == "alice@example.com"
        assert row["user_agent"] == "audit-tests/1.0"

    def test_successful_login_row(self, seeded) -> None:
        client, token = seeded
        (row,) = client.get(
            "/api/v1/security/session-audit",
            params={"ip_address": "198.51.100.2", "event_type": "created"},
            headers=_bearer(token),
        ).json()["data"]
        assert row["success"] is True
        assert row["session_id"]


class TestAuditPage:
    def test_pages_and_summary(self, seeded) -> None:
        client, token = seeded
        first = client.get(
            "/api/v1/security/session-audit", params={"limit": 2, "page": 1}, headers=_bearer(token)
        ).json()
        second = client.get(
            "/api/v1/security/session-audit", params={"limit": 2, "page": 2}, headers=_bearer(token)
        ).json()
        assert first["page"] == 1
        assert first["limit"] == 2
        assert first["sort_by"] == "created_at"
        assert first["sort_order"] == "desc"
        assert first["count"] == second["count"] >= 4
        assert {r["id"] for r in first["data"]}.isdisjoint({r["id"] for r in second["data"]})
        summary = first["summary"]
        assert summary["total"] == first["count"]
        assert summary["success"] + summary["failure"] == summary["total"]
        assert summary["login_failure"] >= 3

    def test_success_filter(self, seeded) -> None:
        client, token = seeded
        body = client.get(
            "/api/v1/security/session-audit", params={"success": "false"}, headers=_bearer(token)
        ).json()
        assert body["count"] == body["summary"]["failure"]
        assert all(r["success"] is False for r in body["data"])

    @pytest.mark.parametrize(
        "params",
        [{"limit": 201}, {"limit": 0}, {"page": 0}, {"sort_by": "metadata"}, {"sort_order": "up"}],
    )
    def test_bad_paging_rejected(self, seeded, params) -> None:
        client, token = seeded
        resp = client.get("/api/v1/security/session-audit", params=params, headers=_bearer(token))
        assert resp.status_code == 422


class TestExport:
    def test_csv_export(self, seeded) -> None:
        client, token = seeded
        resp = client.get(
            "/api/v1/security/session-audit/export",
            params={"ip_address": "203.0.113.7", "limit": 2, "sort_order": "asc"},
            headers=_bearer(token),
        )
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        assert resp.headers["content-disposition"].startswith('attachment; filename="session-audit-')
        assert resp.headers["x-session-audit-total"] == "3"
        assert resp.headers["x-session-audit-returned"] == "2"
        assert resp.headers["x-session-audit-limit"] == "2"
        assert resp.headers["x-session-audit-sort-order"] == "asc"
        assert resp.headers["cache-control"] == "no-store"
        assert resp.content.startswith(b"\xef\xbb\xbf")

        rows = list(csv.reader(io.StringIO(resp.content.decode("utf-8-sig"))))
        assert rows[0] == [
            "created_at",
            "event_type",
            "success",
            "user_email",
            "session_id",
            "ip_address",
            "user_agent",
            "details",
        ]
        assert len(rows) == 3
        assert rows[1][1:4] == ["login_failed", "false", "alice@example.com"]
        assert "reason=invalid_password" in rows[1][7]

    def test_every_field_quoted(self, seeded) -> None:
        client, token = seeded
        resp = client.get("/api/v1/security/session-audit/export", params={"limit": 1}, headers=_bearer(token))
        header = resp.content.decode("utf-8-sig").splitlines()[0]
        assert header.startswith('"created_at","event_type"')

    def test_export_meta(self, seeded) -> None:
        client, token = seeded
        meta = client.get(
            "/api/v1/security/session-audit/export/meta",
            params={"ip_address": "203.0.113.7", "limit": 2},
            headers=_bearer(token),
        ).json()
        assert meta == {
            "count": 3,
            "requested_limit": 2,
            "effective_limit": 2,
            "max_limit": 20000,
            "truncated": True,
        }

    def test_export_limit_capped(self, seeded) -> None:
        client, token = seeded
        meta = client.get(
            "/api/v1/security/session-audit/export/meta", params={"limit": 10**6}, headers=_bearer(token)
        ).json()
        assert meta["effective_limit"] == meta["max_limit"] == 20000
        assert meta["truncated"] is False


class TestMetrics:
    def test_login_metrics(self, seeded) -> None:
        client, token = seeded
        resp = client.get("/api/v1/security/metrics", params={"top_n": 5}, headers=_bearer(token))
        assert resp.status_code == 200
        data = resp.json()
        assert data["window"]["hours"] == 24
        assert data["top_n"] == 5
        assert data["login"]["attempts"] >= 4
        assert data["login"]["failed_attempts"] >= 3
        busiest = data["top_ip_attempts"][0]
        assert busiest["ip_address"] == "203.0.113.7"
        assert busiest["failed_attempts"] == busiest["attempts"]
        assert busiest["failure_rate"] == 100.0

    def test_window_capped(self, seeded) -> None:
        client, token = seeded
        data = client.get("/api/v1/security/metrics", params={"window_hours": 10000}, headers=_bearer(token)).json()
        assert data["window"]["hours"] == 24 * 14

    def test_snapshot_then_history(self, seeded) -> None:
        client, token = seeded
        resp = client.post("/api/v1/security/metrics/snapshots", json={"window_hours": 6}, headers=_bearer(token))
        assert resp.status_code == 201
        created = resp.json()
        assert created["snapshot"]["window"]["hours"] == 6
        assert created["metrics"]["login"] == created["snapshot"]["login"]

        history = client.get(
            "/api/v1/security/metrics/history", params={"window_hours": 6}, headers=_bearer(token)
        ).json()
        assert history["filters"]["window_hours"] == 6
        assert history["count"] == len(history["data"]) >= 1
        assert history["data"][-1]["id"] == created["snapshot"]["id"]

    def test_snapshot_without_body(self, seeded) -> None:
        client, token = seeded
        resp = client.post("/api/v1/security/metrics/snapshots", headers=_bearer(token))
        assert resp.status_code == 201
        assert resp.json()["snapshot"]["window"]["hours"] == 24


class TestAdminOnly:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/security/session-audit/export"),
            ("get", "/api/v1/security/session-audit/export/meta"),
            ("get", "/api/v1/security/metrics"),
            ("get", "/api/v1/security/metrics/history"),
            ("post", "/api/v1/security/metrics/snapshots"),
        ],
    )
    def test_non_admin_forbidden(self, seeded, method, path) -> None:
        client, _ = seeded
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": ALICE_PASSWORD})
        alice = resp.json()["access_token"]
        assert getattr(client, method)(path, headers=_bearer(alice)).status_code == 403

    def test_anonymous_rejected(self, seeded) -> None:
        client, _ = seeded
        assert client.get("/api/v1/security/metrics").status_code == 401
