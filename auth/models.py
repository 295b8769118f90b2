"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Stores and the
session manager do the work; these classes only own the shape and the
construction-time invariants.

Credential is frozen. The `protected` bit is monotonic and may only move
false -> true through auth.guard.ProtectedAccountGuard.elevate(); a frozen
dataclass means no code path can flip it with a plain attribute assignment.

Layer rule: no imports from api/ or artemis/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from core.errors import ValidationError


class AuditEventType(str, Enum):
    created = "created"
    rotated = "rotated"
    revoked = "revoked"
    login_failed = "login_failed"
    expired_cleanup = "expired_cleanup"


@dataclass(frozen=True)
class Credential:
    """An identity in the internal user directory.

    email is unique. password_hash is a bcrypt hash, never a plaintext.
    role is free-form ("ADMIN", "OPERATOR", ...); "ADMIN" unlocks the
    management endpoints.
    """

    email: str
    password_hash: str
    name: str
    role: str
    protected: bool = False
    id: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class RefreshSession:
    """A long-lived, stateful refresh credential.

    id is an opaque random identifier, safe to show to the owner. The raw
    refresh token is handed to the client once and only its SHA-256 digest
    (token_hash) is kept. rotated_from points at the session this one replaced.
    """

    user_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    id: str = ""
    revoked_at: datetime | None = None
    rotated_from: str | None = None

    def __post_init__(self) -> None:
        if self.expires_at <= self.issued_at:
            raise ValidationError("expires_at must be later than issued_at")

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ClientContext:
    """Where a request came from, as stamped onto audit events."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class SessionAuditEvent:
    """One append-only lifecycle record. session_id is None for login_failed
    and expired_cleanup events, which are not tied to a single session.

    success is False only for failed attempts (login_failed). ip_address and
    user_agent are set when the event came from an HTTP request.
    """

    event_type: AuditEventType
    created_at: datetime
    session_id: str | None = None
    user_id: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    user_email: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None


@dataclass(frozen=True)
class AuditFilter:
    """Criteria for querying the audit trail. Unset fields do not filter.

    user_email and ip_address match as case-insensitive substrings; every
    other field matches exactly. start and end are inclusive.
    """

    event_type: AuditEventType | str | None = None
    session_id: str | None = None
    user_id: int | None = None
    user_email: str | None = None
    ip_address: str | None = None
    success: bool | None = None
    start: datetime | None = None
    end: datetime | None = None


@dataclass(frozen=True)
class AttemptCount:
    """Login attempts grouped by one key (an IP address or a user email)."""

    key: str
    attempts: int
    failed_attempts: int
    failure_rate: float


@dataclass(frozen=True)
class SecurityMetrics:
    """Login attempt statistics over the window [window_start, generated_at]."""

    generated_at: datetime
    window_start: datetime
    window_hours: int
    top_n: int
    login_attempts: int
    login_failed_attempts: int
    login_failure_rate: float
    top_ip_attempts: list[AttemptCount] = field(default_factory=list)
    top_user_attempts: list[AttemptCount] = field(default_factory=list)


@dataclass(frozen=True)
class MetricsSnapshot:
    """A persisted SecurityMetrics reading."""

    metrics: SecurityMetrics
    created_at: datetime
    id: int | None = None


@dataclass(frozen=True)
class IssuedTokens:
    """Result of SessionManager.issue() / rotate().

    The refresh_token value is the only copy of the raw token -- it is not
    recoverable from the store afterwards.
    """

    access_token: str
    refresh_token: str
    session_id: str
    expires_in: int
    refresh_expires_at: datetime
