"""
api/routes/v1/security.py -- Session audit trail and login security metrics.

Routes (admin only):
  GET  /api/v1/security/session-audit              -- paginated, counted audit events
  GET  /api/v1/security/session-audit/export       -- the same rows as a CSV download
  GET  /api/v1/security/session-audit/export/meta  -- how many rows an export would return
  GET  /api/v1/security/metrics                    -- login attempt metrics over a window
  GET  /api/v1/security/metrics/history            -- stored metric snapshots, oldest first
  POST /api/v1/security/metrics/snapshots          -- compute and store a snapshot; 201

Audit filters combine with AND. user_email and ip_address are substring
matches. Timestamps accept ISO 8601; naive values are read as UTC.
"""

from __future__ import annotations

import csv
import io
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from api.models import (
    AuditEventRow,
    AuditExportMetaResponse,
    AuditPageResponse,
    AuditSummary,
    MetricsHistoryResponse,
    SecurityMetricsResponse,
    SnapshotCreatedResponse,
    SnapshotRequest,
)
from auth.dependencies import require_admin
from auth.metrics import SecurityMetricsService, metrics_to_dict, snapshot_to_dict
from auth.models import AuditEventType, AuditFilter, Credential
from auth.store import SessionStore
from core.config import get_settings

router = APIRouter()

SortColumn = Literal["created_at", "event_type", "success", "user_email", "ip_address"]
SortOrder = Literal["asc", "desc"]

_CSV_COLUMNS = (
    "created_at",
    "event_type",
    "success",
    "user_email",
    "session_id",
    "ip_address",
    "user_agent",
    "details",
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def audit_filter(
    event_type: Optional[AuditEventType] = None,
    session_id: Optional[str] = Query(default=None, max_length=64),
    user_id: Optional[int] = None,
    user_email: Optional[str] = Query(default=None, max_length=255),
    ip_address: Optional[str] = Query(default=None, max_length=64),
    success: Optional[bool] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> AuditFilter:
    return AuditFilter(
        event_type=event_type,
        session_id=session_id,
        user_id=user_id,
        user_email=user_email,
        ip_address=ip_address,
        success=success,
        start=_as_utc(start),
        end=_as_utc(end),
    )


@router.get("/security/session-audit", response_model=AuditPageResponse)
def session_audit(
    request: Request,
    criteria: AuditFilter = Depends(audit_filter),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    sort_by: SortColumn = "created_at",
    sort_order: SortOrder = "desc",
    current_user: Credential = Depends(require_admin),
) -> AuditPageResponse:
    store: SessionStore = request.app.state.session_store
    events = store.list_audit_events(
        criteria,
        sort_by=sort_by,
        newest_first=sort_order == "desc",
        limit=limit,
        offset=(page - 1) * limit,
    )
    summary = store.summarize_audit_events(criteria)
    return AuditPageResponse(
        data=[AuditEventRow.from_event(e) for e in events],
        count=summary["total"],
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        summary=AuditSummary(**summary),
    )


@router.get("/security/session-audit/export/meta", response_model=AuditExportMetaResponse)
def session_audit_export_meta(
    request: Request,
    criteria: AuditFilter = Depends(audit_filter),
    limit: int = Query(default=1000, ge=1),
    current_user: Credential = Depends(require_admin),
) -> AuditExportMetaResponse:
    """Let a client warn before downloading a truncated export."""
    max_limit = get_settings().session_audit_export_max_limit
    effective = min(limit, max_limit)
    count = request.app.state.session_store.count_audit_events(criteria)
    return AuditExportMetaResponse(
        count=count,
        requested_limit=limit,
        effective_limit=effective,
        max_limit=max_limit,
        truncated=count > effective,
    )


@router.get("/security/session-audit/export", response_class=Response)
def session_audit_export(
    request: Request,
    criteria: AuditFilter = Depends(audit_filter),
    limit: int = Query(default=1000, ge=1),
    sort_by: SortColumn = "created_at",
    sort_order: SortOrder = "desc",
    current_user: Credential = Depends(require_admin),
) -> Response:
    """CSV of the matching events, capped at SESSION_AUDIT_EXPORT_MAX_LIMIT rows.

    Every field is quoted and the body starts with a UTF-8 BOM so spreadsheet
    tools pick the right encoding. X-Session-Audit-* headers describe the cut.
    """
    store: SessionStore = request.app.state.session_store
    max_limit = get_settings().session_audit_export_max_limit
    take = min(limit, max_limit)
    events = store.list_audit_events(criteria, sort_by=sort_by, newest_first=sort_order == "desc", limit=take)
    total = store.count_audit_events(criteria)

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(_CSV_COLUMNS)
    for e in events:
        writer.writerow(
            [
                e.created_at.isoformat(),
                e.event_type.value,
                "true" if e.success else "false",
                e.user_email or "",
                e.session_id or "",
                e.ip_address or "",
                e.user_agent or "",
                _details(e.metadata),
            ]
        )

    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return Response(
        content="\ufeff" + buffer.getvalue(),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="session-audit-{stamp}.csv"',
            "X-Session-Audit-Total": str(total),
            "X-Session-Audit-Returned": str(len(events)),
            "X-Session-Audit-Limit": str(take),
            "X-Session-Audit-Max-Limit": str(max_limit),
            "X-Session-Audit-Sort-By": sort_by,
            "X-Session-Audit-Sort-Order": sort_order,
            "Cache-Control": "no-store",
        },
    )


def _details(metadata: dict) -> str:
    return "; ".join(f"{key}={value}" for key, value in sorted(metadata.items()))


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


@router.get("/security/metrics", response_model=SecurityMetricsResponse)
def security_metrics(
    request: Request,
    window_hours: Optional[int] = None,
    top_n: Optional[int] = None,
    current_user: Credential = Depends(require_admin),
) -> dict:
    """Out-of-range window_hours / top_n fall back to the defaults or are capped."""
    service: SecurityMetricsService = request.app.state.metrics
    return metrics_to_dict(service.calculate(window_hours, top_n))


@router.get("/security/metrics/history", response_model=MetricsHistoryResponse)
def security_metrics_history(
    request: Request,
    window_hours: Optional[int] = None,
    limit: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    current_user: Credential = Depends(require_admin),
) -> dict:
    service: SecurityMetricsService = request.app.state.metrics
    start, end = _as_utc(start), _as_utc(end)
    snapshots = service.history(
        limit,
        default_limit=get_settings().security_metrics_history_default_points,
        window_hours=window_hours,
        start=start,
        end=end,
    )
    return {
        "generated_at": datetime.now(timezone.utc),
        "filters": {
            "window_hours": window_hours,
            "limit": limit,
            "start": start.isoformat() if start else None,
            "end": end.isoformat() if end else None,
        },
        "count": len(snapshots),
        "data": [snapshot_to_dict(s) for s in snapshots],
    }


@router.post("/security/metrics/snapshots", response_model=SnapshotCreatedResponse, status_code=201)
def create_metrics_snapshot(
    request: Request,
    body: Optional[SnapshotRequest] = None,
    current_user: Credential = Depends(require_admin),
) -> dict:
    service: SecurityMetricsService = request.app.state.metrics
    body = body or SnapshotRequest()
    snapshot = service.create_snapshot(body.window_hours, body.top_n)
    return {"snapshot": snapshot_to_dict(snapshot), "metrics": metrics_to_dict(snapshot.metrics)}
