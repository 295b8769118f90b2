"""
tests/conftest.py -- Shared test fixtures for AccessBridge tests.

This module provides:
  - FrozenClock / clock: a settable clock injected into every time-aware service
  - db, users, store, snapshots, recorder, manager, guard: one file-backed SQLite store per test
  - alice: an unprotected USER credential with password "correct horse"
  - api_client: TestClient over the real app with a patched lifespan

Design: file-backed SQLite under tmp_path (not shared-cache :memory:) because
the concurrency tests need real WAL locking between threads; a shared-cache
memory DB reports SQLITE_LOCKED instead of waiting on the busy timeout.

DEBUG and LOGIN_RATE_LIMIT must be set before any auth/api import so
get_settings() auto-generates SECRET_KEY and the login limit does not trip
across a whole test module sharing one client address.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("PRUNE_INTERVAL_MINUTES", "0")
os.environ.setdefault("SECURITY_METRICS_SNAPSHOT_INTERVAL_MINUTES", "0")

import pytest
from fastapi.testclient import TestClient

from api.main import app, attach_services
from auth.audit import AuditRecorder
from auth.guard import ProtectedAccountGuard
from auth.models import Credential
from auth.sessions import SessionManager
from auth.store import Database, MetricsStore, SessionStore, UserStore
from auth.tokens import create_access_token, hash_password
from core.config import get_settings

# bcrypt is slow on purpose; hash the fixture passwords once per run.
ALICE_PASSWORD = "correct horse"
ADMIN_PASSWORD = "admin-pass-123"
_ALICE_HASH = hash_password(ALICE_PASSWORD)
_ADMIN_HASH = hash_password(ADMIN_PASSWORD)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path) -> Generator[Database, None, None]:
    database = Database(f"sqlite:///{tmp_path / 'accessbridge.db'}")
    yield database
    database.close()


@pytest.fixture
def users(db: Database) -> UserStore:
    return UserStore(db)


@pytest.fixture
def store(db: Database) -> SessionStore:
    return SessionStore(db)


@pytest.fixture
def snapshots(db: Database) -> MetricsStore:
    return MetricsStore(db)


@pytest.fixture
def recorder(store: SessionStore, clock: FrozenClock) -> AuditRecorder:
    return AuditRecorder(store, clock=clock)


@pytest.fixture
def guard(users: UserStore) -> ProtectedAccountGuard:
    return ProtectedAccountGuard(users)


@pytest.fixture
def manager(users: UserStore, store: SessionStore, recorder: AuditRecorder, clock: FrozenClock) -> SessionManager:
    return SessionManager(users, store, recorder, clock=clock)


@pytest.fixture
def alice(users: UserStore) -> Credential:
    return users.create_credential(
        Credential(email="alice@example.com", password_hash=_ALICE_HASH, name="Alice", role="USER")
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(db: Database):
    """Return an async context manager that replaces the real lifespan.

    Wires the services over the test database. The prune_task is a
    long-sleeping coroutine so shutdown has a real task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        attach_services(app, db, get_settings())
        app.state.prune_task = asyncio.create_task(asyncio.sleep(99999))
        app.state.snapshot_task = None
        yield
        app.state.prune_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(tmp_path_factory) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    The admin account admin@example.com / ADMIN_PASSWORD exists before the
    client starts, together with an unprotected user alice@example.com.
    """
    db_path = tmp_path_factory.mktemp("api") / "accessbridge.db"
    db = Database(f"sqlite:///{db_path}")
    user_store = UserStore(db)
    admin = user_store.create_credential(
        Credential(email="admin@example.com", password_hash=_ADMIN_HASH, name="Admin", role="ADMIN")
    )
    user_store.create_credential(
        Credential(email="alice@example.com", password_hash=_ALICE_HASH, name="Alice", role="USER")
    )
    token = create_access_token(admin.id, admin.email, admin.role, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(db)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, admin.id

    db.close()
