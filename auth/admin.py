"""
auth/admin.py -- Administrative entry points: bootstrap an admin, elevate an account.

Both functions return a JSON-ready summary dict; main.py prints it and maps
any AccessBridgeError to a non-zero exit.

bootstrap_admin() upserts through the guard, so it can never rewrite the
password or role of a protected account. When the target is already protected
it reports "skipped" and changes nothing. ADMIN_PROTECTED=true goes through
ProtectedAccountGuard.elevate(), the only path that sets the flag.
"""

from __future__ import annotations

import logging

from auth.guard import ProtectedAccountGuard
from auth.models import Credential
from auth.store import UserStore
from auth.tokens import hash_password
from core.errors import ConfigurationError, NotFound, ValidationError

logger = logging.getLogger("accessbridge.admin")

MIN_PASSWORD_LENGTH = 8


def bootstrap_admin(
    users: UserStore,
    guard: ProtectedAccountGuard,
    *,
    email: str,
    password: str,
    name: str = "Admin",
    role: str = "ADMIN",
    protected: bool = False,
) -> dict:
    email = (email or "").strip()
    name = (name or "").strip() or "Admin"
    role = (role or "").strip() or "ADMIN"
    if not email or not password:
        raise ConfigurationError("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"ADMIN_PASSWORD must have at least {MIN_PASSWORD_LENGTH} characters")

    existing = users.get_by_email(email)
    if existing is not None and guard.is_protected(existing):
        logger.info("bootstrap-admin: %s is protected, skipping update", email)
        return _summary("skipped", existing)

    password_hash = hash_password(password)
    if existing is None:
        credential = users.create_credential(
            Credential(email=email, password_hash=password_hash, name=name, role=role)
        )
        status = "created"
    else:
        credential = guard.apply_mutation(
            existing, {"name": name, "role": role, "password": password}, password_hash=password_hash
        )
        status = "updated"

    if protected:
        credential = guard.elevate(credential)
    return _summary(status, credential)


def elevate_account(users: UserStore, guard: ProtectedAccountGuard, email: str) -> dict:
    """Mark an existing account protected. Idempotent."""
    credential = users.get_by_email((email or "").strip())
    if credential is None:
        raise NotFound(f"No user with email {email!r}")
    if guard.is_protected(credential):
        return _summary("already_protected", credential, action="elevate_admin")
    return _summary("elevated", guard.elevate(credential), action="elevate_admin")


def _summary(status: str, credential: Credential, action: str = "bootstrap_admin") -> dict:
    return {
        "action": action,
        "status": status,
        "id": credential.id,
        "email": credential.email,
        "role": credential.role,
        "protected": credential.protected,
    }
