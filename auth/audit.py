"""
auth/audit.py -- Append-only recorder for session lifecycle events.

record() never raises. An audit write that fails must not undo or block the
session operation that triggered it, so the recorder logs the failure with a
full traceback on the "accessbridge.audit" logger and bumps `failed_writes`,
which the health endpoint exposes. Nothing is retried here.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEventType, ClientContext, SessionAuditEvent
from auth.store import IP_ADDRESS_MAX_LENGTH, USER_AGENT_MAX_LENGTH, SessionStore
from core.errors import AccessBridgeError

logger = logging.getLogger("accessbridge.audit")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecorder:
    def __init__(self, store: SessionStore, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self.clock = clock
        self.failed_writes = 0
        self._lock = threading.Lock()

    def record(
        self,
        session_id: str | None,
        event_type: AuditEventType | str,
        metadata: dict[str, Any] | None = None,
        *,
        user_id: int | None = None,
        user_email: str | None = None,
        success: bool | None = None,
        client: ClientContext | None = None,
        at: datetime | None = None,
    ) -> int | None:
        """Append one event. Returns the new event id, or None if the write failed.

        success defaults to False for login_failed and True for everything else.
        """
        event_type = AuditEventType(event_type)
        client = client or ClientContext()
        audit_event = SessionAuditEvent(
            event_type=event_type,
            created_at=at or self.clock(),
            session_id=session_id,
            user_id=user_id,
            user_email=user_email,
            success=event_type is not AuditEventType.login_failed if success is None else success,
            ip_address=client.ip_address[:IP_ADDRESS_MAX_LENGTH] if client.ip_address else None,
            user_agent=client.user_agent[:USER_AGENT_MAX_LENGTH] if client.user_agent else None,
            metadata=dict(metadata or {}),
        )
        try:
            return self.store.add_audit_event(audit_event)
        except (AccessBridgeError, SQLAlchemyError):
            with self._lock:
                self.failed_writes += 1
            logger.exception(
                "Audit write failed (event=%s session=%s); continuing",
                audit_event.event_type.value,
                session_id,
            )
            return None
