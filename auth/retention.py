"""
auth/retention.py -- Scheduled garbage collection for sessions and audit events.

Three sweeps, each idempotent for a fixed `now`:

  prune_expired_sessions(now)                  expires_at < now
  prune_revoked_sessions(now, retention_days)  revoked_at < now - retention
                                               and expires_at >= now
  prune_audit_events(now, retention_days)      created_at < now - retention

Run the expired sweep before the revoked sweep; the revoked sweep skips
expired rows so no row is counted by both. The run_* helpers capture `now`
once, validate every retention value before the first DELETE, and return a
JSON-ready summary for the CLI and the API prune loop.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from auth.audit import AuditRecorder
from auth.models import AuditEventType
from auth.store import SessionStore
from core.errors import ValidationError

logger = logging.getLogger("accessbridge.retention")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_retention_days(value: float, name: str = "retention_days") -> float:
    """Return value as a float, or raise ValidationError if negative or non-finite."""
    try:
        days = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a non-negative number") from exc
    if not math.isfinite(days) or days < 0:
        raise ValidationError(f"{name} must be a non-negative number")
    return days


@dataclass
class SessionSweepSummary:
    action: str
    retention_days: float
    expired_deleted: int
    revoked_deleted: int
    remaining: int
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AuditSweepSummary:
    action: str
    retention_days: float
    cutoff: str
    deleted: int
    remaining: int
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


class RetentionPruner:
    def __init__(
        self,
        store: SessionStore,
        recorder: AuditRecorder | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.clock = clock

    # ------------------------------------------------------------------
    # Individual sweeps
    # ------------------------------------------------------------------

    def prune_expired_sessions(self, now: datetime) -> int:
        deleted = self.store.delete_expired_sessions(now)
        if deleted and self.recorder is not None:
            self.recorder.record(None, AuditEventType.expired_cleanup, {"expired_deleted": deleted}, at=now)
        return deleted

    def prune_revoked_sessions(self, now: datetime, retention_days: float) -> int:
        days = validate_retention_days(retention_days, "REFRESH_REVOKED_RETENTION_DAYS")
        return self.store.delete_revoked_sessions(now - timedelta(days=days), now)

    def prune_audit_events(self, now: datetime, retention_days: float) -> int:
        days = validate_retention_days(retention_days, "SESSION_AUDIT_RETENTION_DAYS")
        return self.store.delete_audit_events_before(now - timedelta(days=days))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_session_sweeps(self, retention_days: float, now: datetime | None = None) -> SessionSweepSummary:
        """Expired sweep, then revoked sweep, against one captured `now`."""
        days = validate_retention_days(retention_days, "REFRESH_REVOKED_RETENTION_DAYS")
        now = now or self.clock()
        expired = self.prune_expired_sessions(now)
        revoked = self.prune_revoked_sessions(now, days)
        summary = SessionSweepSummary(
            action="prune_refresh_sessions",
            retention_days=days,
            expired_deleted=expired,
            revoked_deleted=revoked,
            remaining=self.store.count_sessions(),
            timestamp=now.isoformat(),
        )
        logger.info(
            "Pruned refresh sessions: expired=%d revoked=%d remaining=%d",
            expired,
            revoked,
            summary.remaining,
        )
        return summary

    def run_audit_sweep(self, retention_days: float, now: datetime | None = None) -> AuditSweepSummary:
        days = validate_retention_days(retention_days, "SESSION_AUDIT_RETENTION_DAYS")
        now = now or self.clock()
        deleted = self.prune_audit_events(now, days)
        summary = AuditSweepSummary(
            action="prune_session_audit_events",
            retention_days=days,
            cutoff=(now - timedelta(days=days)).isoformat(),
            deleted=deleted,
            remaining=self.store.count_audit_events(),
            timestamp=now.isoformat(),
        )
        logger.info("Pruned session audit events: deleted=%d remaining=%d", deleted, summary.remaining)
        return summary

    def run_all(
        self, revoked_retention_days: float, audit_retention_days: float, now: datetime | None = None
    ) -> list[dict]:
        """All three sweeps in order, sharing one `now`. Validates both windows first."""
        validate_retention_days(revoked_retention_days, "REFRESH_REVOKED_RETENTION_DAYS")
        validate_retention_days(audit_retention_days, "SESSION_AUDIT_RETENTION_DAYS")
        now = now or self.clock()
        return [
            self.run_session_sweeps(revoked_retention_days, now).to_dict(),
            self.run_audit_sweep(audit_retention_days, now).to_dict(),
        ]
