"""
auth/guard.py -- Protected-account invariant for privileged identities.

A protected credential can never have its password, role or protected flag
changed through a normal management path, and can never be deleted. The flag
itself only moves false -> true, and only through elevate().

The check here is the first line of defense. The second lives in the store:
guarded UPDATE/DELETE statements only match `protected = 0` rows, and SQLite
triggers abort any 1 -> 0 transition. A mutation that passes this check but
races an elevation still fails with ProtectedAccountViolation.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from auth.models import Credential
from auth.store import UserStore
from core.errors import NotFound, ProtectedAccountViolation, ValidationError

logger = logging.getLogger("accessbridge.guard")

GUARDED_FIELDS = frozenset({"password", "role", "protected"})
MUTABLE_FIELDS = frozenset({"name", "password", "role"})


class ProtectedAccountGuard:
    def __init__(self, store: UserStore) -> None:
        self.store = store

    @staticmethod
    def is_protected(credential: Credential) -> bool:
        return credential.protected

    def guard_mutation(self, credential: Credential, change: Mapping[str, Any]) -> None:
        """Raise ProtectedAccountViolation if `change` may not be applied.

        `protected` is never accepted here, even on an unprotected account:
        setting it is elevate()'s job and clearing it is impossible.
        """
        touched = set(change)
        if "protected" in touched:
            raise ProtectedAccountViolation("The protected flag can only be set through account elevation.")
        if credential.protected and touched & GUARDED_FIELDS:
            raise ProtectedAccountViolation(
                f"Account {credential.email} is protected; {', '.join(sorted(touched & GUARDED_FIELDS))} "
                "cannot be changed."
            )

    def guard_deletion(self, credential: Credential) -> None:
        if credential.protected:
            raise ProtectedAccountViolation(f"Account {credential.email} is protected and cannot be deleted.")

    def apply_mutation(
        self,
        credential: Credential,
        change: Mapping[str, Any],
        password_hash: str | None = None,
    ) -> Credential:
        """Check and write a management change. Returns the reloaded credential.

        `change` uses the public field names (name, password, role). The caller
        hashes the password off the request path and passes it as password_hash.
        """
        unknown = set(change) - MUTABLE_FIELDS - {"protected"}
        if unknown:
            raise ValidationError(f"Unknown credential fields: {sorted(unknown)!r}")
        self.guard_mutation(credential, change)
        if "password" in change and password_hash is None:
            raise ValidationError("password_hash is required when changing the password.")
        updated = self.store.update_credential(
            credential.id,
            name=change.get("name"),
            role=change.get("role"),
            password_hash=password_hash if "password" in change else None,
        )
        if not updated:
            raise NotFound(f"User {credential.id} not found.")
        return self.store.get_by_id(credential.id)

    def delete(self, credential: Credential) -> None:
        self.guard_deletion(credential)
        if not self.store.delete_credential(credential.id):
            raise NotFound(f"User {credential.id} not found.")

    def elevate(self, credential: Credential) -> Credential:
        """The single elevation path: set protected = true. Idempotent."""
        if credential.protected:
            return credential
        if not self.store.mark_protected(credential.id):
            raise NotFound(f"User {credential.id} not found.")
        logger.info("Account %s elevated to protected", credential.email)
        return self.store.get_by_id(credential.id)
