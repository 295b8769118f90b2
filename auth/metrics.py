"""
auth/metrics.py -- Login security metrics computed from the session audit trail.

A login attempt is a `created` event (a session opened by a successful login)
or a `login_failed` event. Over a trailing window the service reports total
attempts, failures and failure rate, plus the busiest client IPs and user
emails. Readings can be persisted as snapshots for a history chart and pruned
on a retention window like the audit trail itself.

Requested window and top-N values are clamped rather than rejected:
non-positive or non-finite values fall back to the configured default, large
values are capped at MAX_WINDOW_HOURS / MAX_TOP_N.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from auth.models import AttemptCount, MetricsSnapshot, SecurityMetrics
from auth.retention import validate_retention_days
from auth.store import MetricsStore, SessionStore

logger = logging.getLogger("accessbridge.metrics")

MAX_WINDOW_HOURS = 24 * 14
MAX_TOP_N = 100
MAX_HISTORY_POINTS = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float | None, fallback: int, ceiling: int) -> int:
    if value is None or not math.isfinite(value) or value <= 0:
        return fallback
    return max(1, min(ceiling, int(value)))


def sanitize_window_hours(value: float | None, fallback: int = 24) -> int:
    return _clamp(value, fallback, MAX_WINDOW_HOURS)


def sanitize_top_n(value: float | None, fallback: int = 10) -> int:
    return _clamp(value, fallback, MAX_TOP_N)


def failure_rate(failed: int, attempts: int) -> float:
    """Percentage of failed attempts, rounded to two decimals. 0.0 when idle."""
    if attempts <= 0:
        return 0.0
    return round(failed / attempts * 100, 2)


def _attempt_rows(attempts: list[AttemptCount], key_name: str) -> list[dict]:
    return [
        {
            key_name: a.key,
            "attempts": a.attempts,
            "failed_attempts": a.failed_attempts,
            "failure_rate": a.failure_rate,
        }
        for a in attempts
    ]


def metrics_to_dict(metrics: SecurityMetrics) -> dict:
    """JSON-ready view shared by the API, the CLI and the snapshot history."""
    return {
        "generated_at": metrics.generated_at.isoformat(),
        "top_n": metrics.top_n,
        "window": {
            "hours": metrics.window_hours,
            "start": metrics.window_start.isoformat(),
            "end": metrics.generated_at.isoformat(),
        },
        "login": {
            "attempts": metrics.login_attempts,
            "failed_attempts": metrics.login_failed_attempts,
            "failure_rate": metrics.login_failure_rate,
        },
        "top_ip_attempts": _attempt_rows(metrics.top_ip_attempts, "ip_address"),
        "top_user_attempts": _attempt_rows(metrics.top_user_attempts, "user_email"),
    }


def snapshot_to_dict(snapshot: MetricsSnapshot) -> dict:
    data = metrics_to_dict(snapshot.metrics)
    data["id"] = snapshot.id
    data["created_at"] = snapshot.created_at.isoformat()
    return data


@dataclass
class SnapshotSweepSummary:
    action: str
    retention_days: float
    cutoff: str
    deleted: int
    remaining: int
    timestamp: str

    def to_dict(self) -> dict:
        return asdict(self)


class SecurityMetricsService:
    """Computes, snapshots and prunes login security metrics.

    Usage:
        service = SecurityMetricsService(session_store, MetricsStore(db))
        metrics = service.calculate(window_hours=24, top_n=10)
        snapshot = service.create_snapshot(24, 10)
    """

    def __init__(
        self,
        sessions: SessionStore,
        snapshots: MetricsStore,
        *,
        default_window_hours: int = 24,
        default_top_n: int = 10,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.sessions = sessions
        self.snapshots = snapshots
        self.default_window_hours = sanitize_window_hours(default_window_hours)
        self.default_top_n = sanitize_top_n(default_top_n)
        self.clock = clock

    def calculate(
        self,
        window_hours: float | None = None,
        top_n: float | None = None,
        now: datetime | None = None,
    ) -> SecurityMetrics:
        hours = sanitize_window_hours(window_hours, self.default_window_hours)
        limit = sanitize_top_n(top_n, self.default_top_n)
        now = now or self.clock()
        since = now - timedelta(hours=hours)

        attempts, failed = self.sessions.count_login_attempts(since)
        return SecurityMetrics(
            generated_at=now,
            window_start=since,
            window_hours=hours,
            top_n=limit,
            login_attempts=attempts,
            login_failed_attempts=failed,
            login_failure_rate=failure_rate(failed, attempts),
            top_ip_attempts=self._top(since, "ip_address", limit),
            top_user_attempts=self._top(since, "user_email", limit),
        )

    def create_snapshot(
        self,
        window_hours: float | None = None,
        top_n: float | None = None,
        now: datetime | None = None,
    ) -> MetricsSnapshot:
        metrics = self.calculate(window_hours, top_n, now)
        snapshot = self.snapshots.add_snapshot(metrics, created_at=self.clock())
        logger.info(
            "Security metrics snapshot %s: attempts=%d failed=%d window=%dh",
            snapshot.id,
            metrics.login_attempts,
            metrics.login_failed_attempts,
            metrics.window_hours,
        )
        return snapshot

    def history(
        self,
        limit: float | None = None,
        *,
        default_limit: int = 96,
        window_hours: float | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[MetricsSnapshot]:
        """Most recent snapshots, oldest first. window_hours narrows to one window size."""
        points = _clamp(limit, default_limit, MAX_HISTORY_POINTS)
        hours = sanitize_window_hours(window_hours, 0) or None
        return self.snapshots.list_snapshots(limit=points, window_hours=hours, start=start, end=end)

    def prune_snapshots(self, retention_days: float, now: datetime | None = None) -> SnapshotSweepSummary:
        days = validate_retention_days(retention_days, "SECURITY_METRICS_SNAPSHOT_RETENTION_DAYS")
        now = now or self.clock()
        cutoff = now - timedelta(days=days)
        deleted = self.snapshots.delete_snapshots_before(cutoff)
        summary = SnapshotSweepSummary(
            action="prune_security_metrics_snapshots",
            retention_days=days,
            cutoff=cutoff.isoformat(),
            deleted=deleted,
            remaining=self.snapshots.count_snapshots(),
            timestamp=now.isoformat(),
        )
        logger.info("Pruned security metric snapshots: deleted=%d remaining=%d", deleted, summary.remaining)
        return summary

    def _top(self, since: datetime, column_name: str, top_n: int) -> list[AttemptCount]:
        rows = self.sessions.login_attempts_by(column_name, since, top_n)
        return [AttemptCount(key, attempts, failed, failure_rate(failed, attempts)) for key, attempts, failed in rows]
