"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, SessionStore and MetricsStore are the
repositories; the _row_to_* functions are the mappers. Session manager,
guard, pruner and route code never touch SQL directly.

Handle ownership:
  Database owns the Engine. It is created once at process start (API lifespan
  or a CLI command), passed explicitly to the repositories, and disposed on
  shutdown. There is no module-level engine.

Atomicity:
  Every session-state transition is a conditional UPDATE keyed on
  `revoked_at IS NULL`. The rowcount tells the caller whether it won the
  transition; a loser has changed nothing. rotate_session() performs the
  revoke and the successor insert inside one transaction.

Protected accounts:
  Guarded credential writes carry `protected = 0` in their WHERE clause so an
  elevation that lands between the guard check and the write still wins.
  On SQLite, triggers abort any protected 1 -> 0 transition and any delete of
  a protected row.

Timeouts:
  SQLite connections wait at most STORE_TIMEOUT_SECONDS for a lock; other
  dialects use the same bound as pool_timeout. OperationalError and pool
  timeouts surface as core.errors.StoreUnavailable.

Timestamps are fixed-width UTC strings (_TS_FORMAT), so SQL string comparison
is chronological comparison.

Security:
  All queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth.models import (
    AttemptCount,
    AuditEventType,
    AuditFilter,
    Credential,
    MetricsSnapshot,
    RefreshSession,
    SecurityMetrics,
    SessionAuditEvent,
)
from core.errors import ProtectedAccountViolation, StoreUnavailable, ValidationError

logger = logging.getLogger("accessbridge.store")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

USER_AGENT_MAX_LENGTH = 500
IP_ADDRESS_MAX_LENGTH = 64

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("name", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="OPERATOR"),
    Column("protected", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked_at", String(32)),
    Column("rotated_from", String(64), index=True),
)

_audit_events = Table(
    "session_audit_events",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("session_id", String(64), index=True),
    Column("user_id", Integer),
    Column("user_email", String(255), index=True),
    Column("event_type", String(32), nullable=False),
    Column("success", Integer, nullable=False, server_default="1"),
    Column("ip_address", String(IP_ADDRESS_MAX_LENGTH)),
    Column("user_agent", String(USER_AGENT_MAX_LENGTH)),
    Column("created_at", String(32), nullable=False, index=True),
    Column("metadata", Text, nullable=False, server_default="{}"),
)

_metric_snapshots = Table(
    "security_metric_snapshots",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("generated_at", String(32), nullable=False, index=True),
    Column("period_start", String(32), nullable=False),
    Column("window_hours", Integer, nullable=False),
    Column("top_n", Integer, nullable=False),
    Column("login_attempts", Integer, nullable=False),
    Column("login_failed_attempts", Integer, nullable=False),
    Column("login_failure_rate", Float, nullable=False),
    Column("top_ip_attempts", Text, nullable=False, server_default="[]"),
    Column("top_user_attempts", Text, nullable=False, server_default="[]"),
    Column("created_at", String(32), nullable=False),
)

AUDIT_SORT_COLUMNS = ("created_at", "event_type", "success", "user_email", "ip_address")

# Events that count as a login attempt: a session opened by a successful
# login, or a rejected credential.
_LOGIN_EVENT_TYPES = (AuditEventType.created.value, AuditEventType.login_failed.value)

_PROTECTED_TRIGGERS = (
    """
    CREATE TRIGGER IF NOT EXISTS users_protected_monotonic
    BEFORE UPDATE OF protected ON users
    WHEN OLD.protected = 1 AND NEW.protected = 0
    BEGIN
        SELECT RAISE(ABORT, 'protected flag cannot be cleared');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS users_protected_no_delete
    BEFORE DELETE ON users
    WHEN OLD.protected = 1
    BEGIN
        SELECT RAISE(ABORT, 'protected account cannot be deleted');
    END
    """,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers proceed while a writer holds the lock."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def to_db_time(value: datetime) -> str:
    """Render a datetime as a fixed-width UTC string. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------


class Database:
    """Lifecycle-scoped owner of the SQLAlchemy Engine.

    Usage:
        db = Database("sqlite:///accessbridge.db", timeout_seconds=5)
        users, sessions = UserStore(db), SessionStore(db)
        ...
        db.close()
    """

    def __init__(self, db_url: str, timeout_seconds: float = 5.0) -> None:
        self.url = db_url
        self.timeout_seconds = timeout_seconds
        self.is_sqlite = db_url.startswith("sqlite")
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout_seconds
        else:
            engine_kwargs["pool_timeout"] = timeout_seconds
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if self.is_sqlite:
            event.listen(self.engine, "connect", _set_wal_mode)
        with self._translate_errors("schema setup"):
            _metadata.create_all(self.engine)
            self._ensure_protected_triggers()

    def _ensure_protected_triggers(self) -> None:
        """Install the store-level guard for the protected flag (SQLite only).

        CREATE TRIGGER IF NOT EXISTS is idempotent -- safe on every startup.
        """
        if not self.is_sqlite:
            return
        with self.engine.begin() as conn:
            for ddl in _PROTECTED_TRIGGERS:
                conn.execute(text(ddl))

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (OperationalError, PoolTimeoutError) as exc:
            logger.warning("Store unavailable during %s: %s", operation, exc.__class__.__name__)
            raise StoreUnavailable(f"Store unavailable during {operation}.") from exc

    @contextmanager
    def connect(self, operation: str) -> Iterator[Connection]:
        """Read-only connection. Commit explicitly if you write."""
        with self._translate_errors(operation):
            with self.engine.connect() as conn:
                yield conn

    @contextmanager
    def transaction(self, operation: str) -> Iterator[Connection]:
        """All-or-nothing unit of work: commits on exit, rolls back on any exception."""
        with self._translate_errors(operation):
            with self.engine.begin() as conn:
                yield conn

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for Credential records.

    There is deliberately no method that writes `protected = 0`, and
    mark_protected() is the only method that writes the column at all.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def create_credential(self, credential: Credential) -> Credential:
        """Insert a credential and return it with its assigned id.

        New rows always start unprotected; credential.protected is ignored and
        mark_protected() is the only way to set the flag.
        Raises ValidationError if the email is already registered.
        """
        now = to_db_time(datetime.now(timezone.utc))
        try:
            with self.db.transaction("create_credential") as conn:
                result = conn.execute(
                    _users.insert().values(
                        email=credential.email,
                        password_hash=credential.password_hash,
                        name=credential.name,
                        role=credential.role,
                        protected=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                user_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise ValidationError(f"A user with email {credential.email!r} already exists.") from exc
        return self.get_by_id(user_id)

    def get_by_email(self, email: str) -> Credential | None:
        with self.db.connect("get_by_email") as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def get_by_id(self, user_id: int) -> Credential | None:
        with self.db.connect("get_by_id") as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_credential(row) if row is not None else None

    def list_credentials(self) -> list[Credential]:
        with self.db.connect("list_credentials") as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_credential(r) for r in rows]

    def update_credential(
        self,
        user_id: int,
        *,
        name: str | None = None,
        role: str | None = None,
        password_hash: str | None = None,
    ) -> bool:
        """Write the given fields. Returns False if user_id does not exist.

        When role or password_hash is written, the UPDATE only matches an
        unprotected row. A zero rowcount on an existing row therefore means the
        account is protected (possibly elevated a moment ago by another caller)
        and raises ProtectedAccountViolation.
        """
        values: dict = {}
        if name is not None:
            values["name"] = name
        if role is not None:
            values["role"] = role
        if password_hash is not None:
            values["password_hash"] = password_hash
        if not values:
            return self.get_by_id(user_id) is not None
        values["updated_at"] = to_db_time(datetime.now(timezone.utc))

        stmt = _users.update().where(_users.c.id == user_id)
        guarded = role is not None or password_hash is not None
        if guarded:
            stmt = stmt.where(_users.c.protected == 0)
        with self.db.transaction("update_credential") as conn:
            result = conn.execute(stmt.values(**values))
            if result.rowcount > 0:
                return True
            exists = conn.execute(select(_users.c.protected).where(_users.c.id == user_id)).fetchone()
        if exists is None:
            return False
        raise ProtectedAccountViolation("Account is protected; password and role cannot be changed.")

    def mark_protected(self, user_id: int) -> bool:
        """Set protected = 1. Idempotent. Returns False if user_id does not exist."""
        with self.db.transaction("mark_protected") as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(protected=1, updated_at=to_db_time(datetime.now(timezone.utc)))
            )
        return result.rowcount > 0

    def delete_credential(self, user_id: int) -> bool:
        """Delete an unprotected credential. Returns False if not found.

        Raises ProtectedAccountViolation if the row exists but is protected.
        """
        try:
            with self.db.transaction("delete_credential") as conn:
                result = conn.execute(_users.delete().where((_users.c.id == user_id) & (_users.c.protected == 0)))
                if result.rowcount > 0:
                    return True
                exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone()
        except IntegrityError as exc:
            raise ProtectedAccountViolation("Protected accounts cannot be deleted.") from exc
        if exists is None:
            return False
        raise ProtectedAccountViolation("Protected accounts cannot be deleted.")


# ---------------------------------------------------------------------------
# Refresh sessions and audit events
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for RefreshSession and SessionAuditEvent records."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: RefreshSession) -> None:
        with self.db.transaction("create_session") as conn:
            conn.execute(_refresh_sessions.insert().values(**_session_values(session)))

    def get_session(self, session_id: str) -> RefreshSession | None:
        with self.db.connect("get_session") as conn:
            row = conn.execute(_refresh_sessions.select().where(_refresh_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_by_token_hash(self, token_hash: str) -> RefreshSession | None:
        """O(1) lookup via the UNIQUE index on token_hash."""
        with self.db.connect("get_by_token_hash") as conn:
            row = conn.execute(
                _refresh_sessions.select().where(_refresh_sessions.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def rotate_session(self, old_session_id: str, successor: RefreshSession, now: datetime) -> bool:
        """Revoke old_session_id and insert successor as one transaction.

        Returns False (and writes nothing) if the old session was already
        revoked, i.e. another caller consumed the token first. A successor
        that collides with an existing id or token hash rolls the revoke back
        and raises StoreUnavailable; the old token stays usable for a retry.
        """
        try:
            with self.db.transaction("rotate_session") as conn:
                result = conn.execute(
                    _refresh_sessions.update()
                    .where((_refresh_sessions.c.id == old_session_id) & (_refresh_sessions.c.revoked_at.is_(None)))
                    .values(revoked_at=to_db_time(now))
                )
                if result.rowcount != 1:
                    return False
                conn.execute(_refresh_sessions.insert().values(**_session_values(successor)))
        except IntegrityError as exc:
            logger.warning("Successor insert for session %s collided; rotation rolled back", old_session_id)
            raise StoreUnavailable("Could not store the rotated session; retry the refresh.") from exc
        return True

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        """Set revoked_at only if unset. Returns True if this call revoked it."""
        return bool(self.revoke_sessions([session_id], now))

    def revoke_sessions(self, session_ids: list[str], now: datetime) -> list[str]:
        """Revoke each still-active id. Returns the ids this call actually revoked."""
        revoked: list[str] = []
        if not session_ids:
            return revoked
        stamp = to_db_time(now)
        with self.db.transaction("revoke_sessions") as conn:
            for session_id in session_ids:
                result = conn.execute(
                    _refresh_sessions.update()
                    .where((_refresh_sessions.c.id == session_id) & (_refresh_sessions.c.revoked_at.is_(None)))
                    .values(revoked_at=stamp)
                )
                if result.rowcount > 0:
                    revoked.append(session_id)
        return revoked

    def list_active_sessions(self, user_id: int, now: datetime) -> list[RefreshSession]:
        """Unrevoked, unexpired sessions for a user, newest first."""
        with self.db.connect("list_active_sessions") as conn:
            rows = conn.execute(
                _refresh_sessions.select()
                .where(
                    (_refresh_sessions.c.user_id == user_id)
                    & (_refresh_sessions.c.revoked_at.is_(None))
                    & (_refresh_sessions.c.expires_at > to_db_time(now))
                )
                .order_by(_refresh_sessions.c.issued_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def list_successor_ids(self, session_ids: list[str]) -> list[str]:
        """Ids of sessions whose rotated_from is one of session_ids."""
        if not session_ids:
            return []
        with self.db.connect("list_successor_ids") as conn:
            rows = conn.execute(
                select(_refresh_sessions.c.id).where(_refresh_sessions.c.rotated_from.in_(session_ids))
            ).fetchall()
        return [r.id for r in rows]

    def delete_expired_sessions(self, now: datetime) -> int:
        with self.db.transaction("delete_expired_sessions") as conn:
            result = conn.execute(_refresh_sessions.delete().where(_refresh_sessions.c.expires_at < to_db_time(now)))
        return result.rowcount

    def delete_revoked_sessions(self, revoked_before: datetime, now: datetime) -> int:
        """Delete revoked rows older than revoked_before that have not yet expired.

        The expires_at >= now clause leaves expired rows to
        delete_expired_sessions() so the two sweeps never count a row twice.
        """
        with self.db.transaction("delete_revoked_sessions") as conn:
            result = conn.execute(
                _refresh_sessions.delete().where(
                    _refresh_sessions.c.revoked_at.is_not(None)
                    & (_refresh_sessions.c.revoked_at < to_db_time(revoked_before))
                    & (_refresh_sessions.c.expires_at >= to_db_time(now))
                )
            )
        return result.rowcount

    def count_sessions(self) -> int:
        with self.db.connect("count_sessions") as conn:
            return conn.execute(select(func.count()).select_from(_refresh_sessions)).scalar() or 0

    # ------------------------------------------------------------------
    # Audit events
    # ------------------------------------------------------------------

    def add_audit_event(self, audit_event: SessionAuditEvent) -> int:
        """Append one event and return its id. Events are never updated."""
        with self.db.transaction("add_audit_event") as conn:
            result = conn.execute(
                _audit_events.insert().values(
                    session_id=audit_event.session_id,
                    user_id=audit_event.user_id,
                    user_email=audit_event.user_email,
                    event_type=AuditEventType(audit_event.event_type).value,
                    success=int(audit_event.success),
                    ip_address=audit_event.ip_address,
                    user_agent=audit_event.user_agent,
                    created_at=to_db_time(audit_event.created_at),
                    metadata=json.dumps(audit_event.metadata, default=str, sort_keys=True),
                )
            )
            return result.inserted_primary_key[0]

    def list_audit_events(
        self,
        audit_filter: AuditFilter | None = None,
        *,
        sort_by: str = "created_at",
        newest_first: bool = True,
        limit: int = 100,
        offset: int = 0,
        **criteria,
    ) -> list[SessionAuditEvent]:
        """Matching events, one page at a time.

        Pass either an AuditFilter or its fields as keyword arguments.
        Ties on sort_by are broken by insertion order in the same direction.
        """
        if sort_by not in AUDIT_SORT_COLUMNS:
            raise ValidationError(f"sort_by must be one of: {', '.join(AUDIT_SORT_COLUMNS)}")
        audit_filter = audit_filter or AuditFilter(**criteria)
        column = _audit_events.c[sort_by]
        if newest_first:
            order = (column.desc(), _audit_events.c.id.desc())
        else:
            order = (column.asc(), _audit_events.c.id.asc())
        stmt = _apply_audit_filter(_audit_events.select(), audit_filter).order_by(*order)
        with self.db.connect("list_audit_events") as conn:
            rows = conn.execute(stmt.limit(limit).offset(offset)).fetchall()
        return [_row_to_audit_event(r) for r in rows]

    def count_audit_events(self, audit_filter: AuditFilter | None = None) -> int:
        stmt = _apply_audit_filter(select(func.count()).select_from(_audit_events), audit_filter)
        with self.db.connect("count_audit_events") as conn:
            return conn.execute(stmt).scalar() or 0

    def summarize_audit_events(self, audit_filter: AuditFilter | None = None) -> dict[str, int]:
        """Totals for the matching events: total, success, failure, login_failure."""
        failed = _audit_events.c.success == 0
        stmt = select(
            func.count(),
            func.coalesce(func.sum(case((failed, 0), else_=1)), 0),
            func.coalesce(func.sum(case((failed, 1), else_=0)), 0),
            func.coalesce(
                func.sum(case((_audit_events.c.event_type == AuditEventType.login_failed.value, 1), else_=0)), 0
            ),
        ).select_from(_audit_events)
        stmt = _apply_audit_filter(stmt, audit_filter)
        with self.db.connect("summarize_audit_events") as conn:
            total, succeeded, failures, login_failures = conn.execute(stmt).one()
        return {
            "total": total or 0,
            "success": int(succeeded),
            "failure": int(failures),
            "login_failure": int(login_failures),
        }

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        with self.db.transaction("delete_audit_events_before") as conn:
            result = conn.execute(_audit_events.delete().where(_audit_events.c.created_at < to_db_time(cutoff)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Login attempt aggregates
    # ------------------------------------------------------------------

    def count_login_attempts(self, since: datetime) -> tuple[int, int]:
        """(attempts, failed attempts) recorded at or after since."""
        stmt = select(
            func.count(),
            func.coalesce(func.sum(case((_audit_events.c.success == 0, 1), else_=0)), 0),
        ).where(
            _audit_events.c.event_type.in_(_LOGIN_EVENT_TYPES),
            _audit_events.c.created_at >= to_db_time(since),
        )
        with self.db.connect("count_login_attempts") as conn:
            attempts, failed = conn.execute(stmt).one()
        return attempts or 0, int(failed)

    def login_attempts_by(self, column_name: str, since: datetime, top_n: int) -> list[tuple[str, int, int]]:
        """Top top_n values of column_name by login attempts since `since`.

        Returns (value, attempts, failed attempts) rows, most attempts first,
        ties ordered by value. Rows where the column is NULL are skipped.
        """
        if column_name not in ("ip_address", "user_email"):
            raise ValidationError("Login attempts can only be grouped by ip_address or user_email.")
        column = _audit_events.c[column_name]
        attempts = func.count().label("attempts")
        failed = func.coalesce(func.sum(case((_audit_events.c.success == 0, 1), else_=0)), 0).label("failed")
        stmt = (
            select(column, attempts, failed)
            .where(
                _audit_events.c.event_type.in_(_LOGIN_EVENT_TYPES),
                _audit_events.c.created_at >= to_db_time(since),
                column.is_not(None),
            )
            .group_by(column)
            .order_by(attempts.desc(), column.asc())
            .limit(top_n)
        )
        with self.db.connect("login_attempts_by") as conn:
            rows = conn.execute(stmt).fetchall()
        return [(row[0], row[1], int(row[2])) for row in rows]


# ---------------------------------------------------------------------------
# Security metric snapshots
# ---------------------------------------------------------------------------


class MetricsStore:
    """Repository for persisted SecurityMetrics readings."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def add_snapshot(self, metrics: SecurityMetrics, created_at: datetime) -> MetricsSnapshot:
        with self.db.transaction("add_snapshot") as conn:
            result = conn.execute(
                _metric_snapshots.insert().values(
                    generated_at=to_db_time(metrics.generated_at),
                    period_start=to_db_time(metrics.window_start),
                    window_hours=metrics.window_hours,
                    top_n=metrics.top_n,
                    login_attempts=metrics.login_attempts,
                    login_failed_attempts=metrics.login_failed_attempts,
                    login_failure_rate=metrics.login_failure_rate,
                    top_ip_attempts=_dump_attempts(metrics.top_ip_attempts),
                    top_user_attempts=_dump_attempts(metrics.top_user_attempts),
                    created_at=to_db_time(created_at),
                )
            )
            snapshot_id = result.inserted_primary_key[0]
        return MetricsSnapshot(metrics=metrics, created_at=created_at, id=snapshot_id)

    def list_snapshots(
        self,
        *,
        limit: int,
        window_hours: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[MetricsSnapshot]:
        """The newest `limit` matching snapshots, returned oldest first."""
        stmt = _metric_snapshots.select()
        if window_hours is not None:
            stmt = stmt.where(_metric_snapshots.c.window_hours == window_hours)
        if start is not None:
            stmt = stmt.where(_metric_snapshots.c.generated_at >= to_db_time(start))
        if end is not None:
            stmt = stmt.where(_metric_snapshots.c.generated_at <= to_db_time(end))
        stmt = stmt.order_by(_metric_snapshots.c.generated_at.desc(), _metric_snapshots.c.id.desc()).limit(limit)
        with self.db.connect("list_snapshots") as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_snapshot(r) for r in reversed(rows)]

    def delete_snapshots_before(self, cutoff: datetime) -> int:
        with self.db.transaction("delete_snapshots_before") as conn:
            result = conn.execute(
                _metric_snapshots.delete().where(_metric_snapshots.c.generated_at < to_db_time(cutoff))
            )
        return result.rowcount

    def count_snapshots(self) -> int:
        with self.db.connect("count_snapshots") as conn:
            return conn.execute(select(func.count()).select_from(_metric_snapshots)).scalar() or 0


def _audit_conditions(audit_filter: AuditFilter) -> list:
    c = _audit_events.c
    conditions = []
    if audit_filter.event_type is not None:
        conditions.append(c.event_type == AuditEventType(audit_filter.event_type).value)
    if audit_filter.session_id is not None:
        conditions.append(c.session_id == audit_filter.session_id)
    if audit_filter.user_id is not None:
        conditions.append(c.user_id == audit_filter.user_id)
    if audit_filter.user_email:
        conditions.append(func.lower(c.user_email).contains(audit_filter.user_email.lower(), autoescape=True))
    if audit_filter.ip_address:
        conditions.append(func.lower(c.ip_address).contains(audit_filter.ip_address.lower(), autoescape=True))
    if audit_filter.success is not None:
        conditions.append(c.success == int(audit_filter.success))
    if audit_filter.start is not None:
        conditions.append(c.created_at >= to_db_time(audit_filter.start))
    if audit_filter.end is not None:
        conditions.append(c.created_at <= to_db_time(audit_filter.end))
    return conditions


def _apply_audit_filter(stmt, audit_filter: AuditFilter | None):
    conditions = _audit_conditions(audit_filter) if audit_filter is not None else []
    return stmt.where(*conditions) if conditions else stmt


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(session: RefreshSession) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "token_hash": session.token_hash,
        "issued_at": to_db_time(session.issued_at),
        "expires_at": to_db_time(session.expires_at),
        "revoked_at": to_db_time(session.revoked_at) if session.revoked_at is not None else None,
        "rotated_from": session.rotated_from,
    }


def _row_to_credential(row) -> Credential:
    return Credential(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        name=row.name,
        role=row.role,
        protected=bool(row.protected),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        issued_at=from_db_time(row.issued_at),
        expires_at=from_db_time(row.expires_at),
        revoked_at=from_db_time(row.revoked_at),
        rotated_from=row.rotated_from,
    )


def _row_to_audit_event(row) -> SessionAuditEvent:
    mapping = row._mapping
    return SessionAuditEvent(
        id=mapping["id"],
        session_id=mapping["session_id"],
        user_id=mapping["user_id"],
        user_email=mapping["user_email"],
        event_type=AuditEventType(mapping["event_type"]),
        success=bool(mapping["success"]),
        ip_address=mapping["ip_address"],
        user_agent=mapping["user_agent"],
        created_at=from_db_time(mapping["created_at"]),
        metadata=json.loads(mapping["metadata"] or "{}"),
    )


def _dump_attempts(attempts: list[AttemptCount]) -> str:
    return json.dumps(
        [[a.key, a.attempts, a.failed_attempts, a.failure_rate] for a in attempts],
        separators=(",", ":"),
    )


def _load_attempts(raw: str | None) -> list[AttemptCount]:
    return [AttemptCount(key, attempts, failed, rate) for key, attempts, failed, rate in json.loads(raw or "[]")]


def _row_to_snapshot(row) -> MetricsSnapshot:
    metrics = SecurityMetrics(
        generated_at=from_db_time(row.generated_at),
        window_start=from_db_time(row.period_start),
        window_hours=row.window_hours,
        top_n=row.top_n,
        login_attempts=row.login_attempts,
        login_failed_attempts=row.login_failed_attempts,
        login_failure_rate=row.login_failure_rate,
        top_ip_attempts=_load_attempts(row.top_ip_attempts),
        top_user_attempts=_load_attempts(row.top_user_attempts),
    )
    return MetricsSnapshot(metrics=metrics, created_at=from_db_time(row.created_at), id=row.id)
