"""
API request and response models for AccessBridge REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditEventType, Credential, IssuedTokens, RefreshSession, SessionAuditEvent

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    # bcrypt only reads the first 72 bytes.
    password: str = Field(min_length=1, max_length=72)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=255)


class RevokeSessionRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=64)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id}.

    There is no `protected` field: elevation has its own endpoint and the flag
    can never be cleared.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    role: Optional[str] = Field(default=None, min_length=1, max_length=30)
    password: Optional[str] = Field(default=None, min_length=8, max_length=72)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: str
    role: str
    protected: bool

    @classmethod
    def from_credential(cls, credential: Credential) -> "UserResponse":
        return cls(
            id=credential.id,
            email=credential.email,
            name=credential.name,
            role=credential.role,
            protected=credential.protected,
        )


class TokenResponse(BaseModel):
    """Returned by login and refresh. refresh_token is shown exactly once."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    refresh_expires_at: datetime
    user: Optional[UserResponse] = None

    @classmethod
    def from_tokens(cls, tokens: IssuedTokens, user: Optional[Credential] = None) -> "TokenResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_in=tokens.expires_in,
            session_id=tokens.session_id,
            refresh_expires_at=tokens.refresh_expires_at,
            user=UserResponse.from_credential(user) if user is not None else None,
        )


class SessionRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: RefreshSession) -> "SessionRow":
        return cls(id=session.id, issued_at=session.issued_at, expires_at=session.expires_at)


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    data: list[SessionRow]
    count: int
    max_active_sessions: int


class RevokeAllResponse(BaseModel):
    revoked_sessions: int


class AuditEventRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    session_id: Optional[str]
    user_id: Optional[int]
    user_email: Optional[str]
    event_type: AuditEventType
    success: bool
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    metadata: dict[str, Any]

    @classmethod
    def from_event(cls, audit_event: SessionAuditEvent) -> "AuditEventRow":
        return cls(
            id=audit_event.id,
            session_id=audit_event.session_id,
            user_id=audit_event.user_id,
            user_email=audit_event.user_email,
            event_type=audit_event.event_type,
            success=audit_event.success,
            ip_address=audit_event.ip_address,
            user_agent=audit_event.user_agent,
            created_at=audit_event.created_at,
            metadata=audit_event.metadata,
        )


class AuditSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    success: int
    failure: int
    login_failure: int


class AuditPageResponse(BaseModel):
    """One page of GET /api/v1/security/session-audit. count is the total match count."""

    model_config = ConfigDict(frozen=True)

    data: list[AuditEventRow]
    count: int
    page: int
    limit: int
    sort_by: str
    sort_order: str
    summary: AuditSummary


class AuditExportMetaResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    count: int
    requested_limit: int
    effective_limit: int
    max_limit: int
    truncated: bool


class MetricsWindow(BaseModel):
    hours: int
    start: datetime
    end: datetime


class LoginMetrics(BaseModel):
    attempts: int
    failed_attempts: int
    failure_rate: float


class IpAttemptRow(BaseModel):
    ip_address: str
    attempts: int
    failed_attempts: int
    failure_rate: float


class UserAttemptRow(BaseModel):
    user_email: str
    attempts: int
    failed_attempts: int
    failure_rate: float


class SecurityMetricsResponse(BaseModel):
    """Login attempt statistics over a trailing window. Rates are percentages."""

    generated_at: datetime
    top_n: int
    window: MetricsWindow
    login: LoginMetrics
    top_ip_attempts: list[IpAttemptRow]
    top_user_attempts: list[UserAttemptRow]


class MetricsSnapshotResponse(SecurityMetricsResponse):
    id: int
    created_at: datetime


class MetricsHistoryResponse(BaseModel):
    generated_at: datetime
    filters: dict[str, Any]
    count: int
    data: list[MetricsSnapshotResponse]


class SnapshotRequest(BaseModel):
    """Body for POST /api/v1/security/metrics/snapshots. Omitted values use the configured defaults."""

    window_hours: Optional[int] = None
    top_n: Optional[int] = None


class SnapshotCreatedResponse(BaseModel):
    snapshot: MetricsSnapshotResponse
    metrics: SecurityMetricsResponse


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    audit_write_failures: int = 0
