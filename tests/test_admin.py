"""Unit tests for auth/admin.py -- admin bootstrap and account elevation.

Covers:
- bootstrap creates, then updates, an unprotected admin
- bootstrap with protected=True elevates; a later run is skipped
- missing or short credentials are rejected before touching the store
- elevate_account is idempotent and reports unknown emails
"""

import pytest

from auth.admin import bootstrap_admin, elevate_account
from auth.tokens import verify_password
from core.errors import ConfigurationError, NotFound, ValidationError


def _bootstrap(users, guard, **overrides):
    kwargs = {"email": "ops@example.com", "password": "first-password"}
    kwargs.update(overrides)
    return bootstrap_admin(users, guard, **kwargs)


class TestBootstrapAdmin:
    def test_creates_admin(self, users, guard) -> None:
        summary = _bootstrap(users, guard)
        assert summary["action"] == "bootstrap_admin"
        assert summary["status"] == "created"
        assert summary["role"] == "ADMIN"
        assert summary["protected"] is False
        stored = users.get_by_email("ops@example.com")
        assert verify_password("first-password", stored.password_hash)

    def test_second_run_updates_password(self, users, guard) -> None:
        _bootstrap(users, guard)
        summary = _bootstrap(users, guard, password="second-password", name="Ops")
        assert summary["status"] == "updated"
        stored = users.get_by_email("ops@example.com")
        assert stored.name == "Ops"
        assert verify_password("second-password", stored.password_hash)

    def test_protected_bootstrap_then_skip(self, users, guard) -> None:
        first = _bootstrap(users, guard, protected=True)
        assert first["status"] == "created"
        assert first["protected"] is True

        second = _bootstrap(users, guard, password="attacker-password", role="USER")
        assert second["status"] == "skipped"
        stored = users.get_by_email("ops@example.com")
        assert stored.role == "ADMIN"
        assert verify_password("first-password", stored.password_hash)

    @pytest.mark.parametrize("email,password", [("", "long-enough"), ("ops@example.com", "")])
    def test_missing_credentials(self, users, guard, email, password) -> None:
        with pytest.raises(ConfigurationError):
            _bootstrap(users, guard, email=email, password=password)
        assert users.list_credentials() == []

    def test_short_password(self, users, guard) -> None:
        with pytest.raises(ValidationError):
            _bootstrap(users, guard, password="short")


class TestElevateAccount:
    def test_elevate_then_already_protected(self, users, guard, alice) -> None:
        assert elevate_account(users, guard, alice.email)["status"] == "elevated"
        summary = elevate_account(users, guard, alice.email)
        assert summary["status"] == "already_protected"
        assert summary["action"] == "elevate_admin"
        assert summary["protected"] is True

    def test_unknown_email(self, users, guard) -> None:
        with pytest.raises(NotFound):
            elevate_account(users, guard, "ghost@example.com")
