"""
tests/test_health.py -- Integration tests for GET /api/v1/health and the prune hook.

Covers:
  - 200 response with status, version, and audit_write_failures
  - No authentication required
  - A failed scheduled prune run is logged, not raised
  - The background loops keep running after an unexpected error
  - Startup refuses to run without a signing key
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi import FastAPI

from api.main import VERSION, _prune_loop, lifespan, run_prune_once, run_snapshot_once
from core.config import Settings, get_settings
from core.errors import ConfigurationError, StoreUnavailable


def test_health_returns_200(api_client):
    """Health endpoint returns 200 with status, version, and audit counter."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == VERSION
    assert data["audit_write_failures"] == 0


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_reports_failed_audit_writes(api_client):
    client, _, _ = api_client
    audit = client.app.state.audit
    before = audit.failed_writes
    audit.failed_writes += 2
    try:
        assert client.get("/api/v1/health").json()["audit_write_failures"] == before + 2
    finally:
        audit.failed_writes = before


def test_run_prune_once_returns_summaries(api_client):
    client, _, _ = api_client
    summaries = run_prune_once(client.app.state.pruner, get_settings())
    assert [s["action"] for s in summaries] == ["prune_refresh_sessions", "prune_session_audit_events"]


def test_run_prune_once_survives_store_failure(caplog):
    pruner = MagicMock()
    pruner.run_all.side_effect = StoreUnavailable("Store unavailable during delete_expired_sessions.")
    with caplog.at_level(logging.ERROR, logger="accessbridge.api"):
        assert run_prune_once(pruner, get_settings()) is None
    assert "Scheduled prune run failed" in caplog.text


def test_prune_loop_survives_unexpected_error(caplog):
    calls = []

    def run_all(*args):
        calls.append(args)
        if len(calls) == 1:
            raise ValueError("unexpected")
        return []

    pruner = MagicMock()
    pruner.run_all.side_effect = run_all
    app = SimpleNamespace(state=SimpleNamespace(pruner=pruner))
    settings = get_settings().model_copy(update={"prune_interval_minutes": 0.0001})

    async def drive():
        task = asyncio.create_task(_prune_loop(app, settings))
        for _ in range(500):
            await asyncio.sleep(0.01)
            if len(calls) >= 2:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    with caplog.at_level(logging.ERROR, logger="accessbridge.api"):
        asyncio.run(drive())
    assert len(calls) >= 2
    assert "Scheduled prune run failed unexpectedly" in caplog.text


def test_run_snapshot_once_stores_and_prunes(api_client):
    client, _, _ = api_client
    result = run_snapshot_once(client.app.state.metrics, get_settings())
    assert isinstance(result["snapshot_id"], int)
    assert result["prune"]["action"] == "prune_security_metrics_snapshots"


def test_run_snapshot_once_survives_store_failure(caplog):
    metrics = MagicMock()
    metrics.create_snapshot.side_effect = StoreUnavailable("Store unavailable during add_snapshot.")
    with caplog.at_level(logging.ERROR, logger="accessbridge.api"):
        assert run_snapshot_once(metrics, get_settings()) is None
    assert "Scheduled metrics snapshot failed" in caplog.text


def test_startup_requires_signing_key(monkeypatch, tmp_path):
    settings = Settings(debug=False, secret_key="", database_url=f"sqlite:///{tmp_path / 'startup.db'}")
    monkeypatch.setattr("api.main.get_settings", lambda: settings)

    async def start():
        async with lifespan(FastAPI()):
            pass

    with pytest.raises(ConfigurationError):
        asyncio.run(start())
    assert not (tmp_path / "startup.db").exists()
