"""
auth/sessions.py -- Refresh-session lifecycle: issue, validate, rotate, revoke.

State machine per RefreshSession:

    Active --rotate--> Rotated (revoked, successor linked via rotated_from)
    Active --revoke--> Revoked
    Active --time----> Expired

Revoked and Expired are terminal. Every transition out of Active is a
conditional UPDATE on `revoked_at IS NULL` (see auth/store.py), so two racing
rotate() calls on one token produce exactly one successor; the loser sees
SessionRevoked and the winner's successor stays valid.

Presenting a token that was already rotated away is treated as a replay.
With REVOKE_LINEAGE_ON_REUSE enabled, every still-active descendant of the
replayed session is revoked too, which logs out whoever holds the stolen
branch along with the legitimate client.

Access tokens are stateless JWTs and are never persisted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.audit import AuditRecorder
from auth.models import AuditEventType, ClientContext, Credential, IssuedTokens, RefreshSession
from auth.store import SessionStore, UserStore
from auth.tokens import create_access_token, generate_refresh_token, generate_session_id, hash_refresh_token
from core.config import Settings
from core.errors import NotFound, SessionExpired, SessionRevoked, ValidationError

logger = logging.getLogger("accessbridge.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionManager:
    """Issues and transitions refresh sessions for one store.

    Usage:
        manager = SessionManager.from_settings(users, sessions, recorder, get_settings())
        tokens = manager.issue(user.id)
        tokens = manager.rotate(tokens.refresh_token)
        manager.revoke(tokens.refresh_token)
    """

    def __init__(
        self,
        users: UserStore,
        store: SessionStore,
        recorder: AuditRecorder,
        *,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        max_active_sessions: int = 5,
        revoke_lineage_on_reuse: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if refresh_ttl_seconds <= 0 or access_ttl_seconds <= 0:
            raise ValidationError("Token TTLs must be positive.")
        if max_active_sessions < 1:
            raise ValidationError("max_active_sessions must be at least 1.")
        self.users = users
        self.store = store
        self.recorder = recorder
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl = timedelta(seconds=refresh_ttl_seconds)
        self.max_active_sessions = max_active_sessions
        self.revoke_lineage_on_reuse = revoke_lineage_on_reuse
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        users: UserStore,
        store: SessionStore,
        recorder: AuditRecorder,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "SessionManager":
        return cls(
            users,
            store,
            recorder,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            max_active_sessions=settings.max_active_refresh_sessions,
            revoke_lineage_on_reuse=settings.revoke_lineage_on_reuse,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def issue(self, user_id: int, client: ClientContext | None = None) -> IssuedTokens:
        """Create a new Active session for user_id and mint an access token."""
        credential = self._credential(user_id)
        now = self.clock()
        raw_token, session = self._new_session(user_id, now)
        self.store.create_session(session)
        self.recorder.record(
            session.id, AuditEventType.created, {}, user_id=user_id, user_email=credential.email, client=client, at=now
        )
        self._enforce_session_cap(user_id, now, keep=session.id)
        return self._tokens(credential, raw_token, session)

    def validate(self, refresh_token: str) -> RefreshSession:
        """Return the Active session for refresh_token.

        Checks in order: exists (NotFound), not revoked (SessionRevoked),
        not expired (SessionExpired).
        """
        session = self._lookup(refresh_token)
        self._check_active(session, self.clock())
        return session

    def rotate(self, refresh_token: str, client: ClientContext | None = None) -> IssuedTokens:
        """Consume refresh_token and return a fresh token pair.

        The old session's revoke and the successor's insert commit together.
        """
        now = self.clock()
        current = self._lookup(refresh_token)
        try:
            self._check_active(current, now)
        except SessionRevoked:
            self._handle_reuse(current, now, client)
            raise
        credential = self._credential(current.user_id)

        raw_token, successor = self._new_session(current.user_id, now, rotated_from=current.id)
        if not self.store.rotate_session(current.id, successor, now):
            # Lost the race: the token was active when read, so the winner's
            # successor is legitimate and stays untouched.
            logger.info("Concurrent rotate lost for session %s (user %s)", current.id, current.user_id)
            raise SessionRevoked("Refresh token has already been used.")

        self.recorder.record(
            successor.id,
            AuditEventType.rotated,
            {"rotated_from": current.id},
            user_id=current.user_id,
            user_email=credential.email,
            client=client,
            at=now,
        )
        self._enforce_session_cap(current.user_id, now, keep=successor.id)
        return self._tokens(credential, raw_token, successor)

    def revoke(self, refresh_token: str, client: ClientContext | None = None) -> bool:
        """Revoke the session behind refresh_token. Idempotent.

        Returns True if this call performed the transition, False if the token
        is unknown or was already revoked.
        """
        session = self.store.get_by_token_hash(hash_refresh_token(refresh_token))
        if session is None:
            return False
        now = self.clock()
        if not self.store.revoke_session(session.id, now):
            return False
        self.recorder.record(
            session.id, AuditEventType.revoked, {"reason": "logout"}, user_id=session.user_id, client=client, at=now
        )
        return True

    def revoke_session_id(self, user_id: int, session_id: str, client: ClientContext | None = None) -> bool:
        """Revoke one of the caller's own sessions by id. Idempotent."""
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFound("Session not found.")
        now = self.clock()
        if not self.store.revoke_session(session.id, now):
            return False
        self.recorder.record(
            session.id, AuditEventType.revoked, {"reason": "user_revoked"}, user_id=user_id, client=client, at=now
        )
        return True

    def revoke_all(self, user_id: int, client: ClientContext | None = None) -> int:
        """Revoke every active session of user_id. Returns how many were revoked."""
        now = self.clock()
        active = self.store.list_active_sessions(user_id, now)
        revoked = self.store.revoke_sessions([s.id for s in active], now)
        for session_id in revoked:
            self.recorder.record(
                session_id, AuditEventType.revoked, {"reason": "logout_all"}, user_id=user_id, client=client, at=now
            )
        return len(revoked)

    def list_active(self, user_id: int) -> list[RefreshSession]:
        return self.store.list_active_sessions(user_id, self.clock())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _credential(self, user_id: int) -> Credential:
        credential = self.users.get_by_id(user_id)
        if credential is None:
            raise NotFound(f"User {user_id} not found.")
        return credential

    def _lookup(self, refresh_token: str) -> RefreshSession:
        if not refresh_token:
            raise NotFound("Refresh token not recognised.")
        session = self.store.get_by_token_hash(hash_refresh_token(refresh_token))
        if session is None:
            raise NotFound("Refresh token not recognised.")
        return session

    @staticmethod
    def _check_active(session: RefreshSession, now: datetime) -> None:
        if session.is_revoked:
            raise SessionRevoked("Refresh token has been revoked.")
        if session.is_expired(now):
            raise SessionExpired("Refresh token has expired.")

    def _new_session(
        self, user_id: int, now: datetime, rotated_from: str | None = None
    ) -> tuple[str, RefreshSession]:
        raw_token = generate_refresh_token()
        session = RefreshSession(
            id=generate_session_id(),
            user_id=user_id,
            token_hash=hash_refresh_token(raw_token),
            issued_at=now,
            expires_at=now + self.refresh_ttl,
            rotated_from=rotated_from,
        )
        return raw_token, session

    def _tokens(self, credential: Credential, raw_token: str, session: RefreshSession) -> IssuedTokens:
        access_token = create_access_token(
            credential.id, credential.email, credential.role, expire_seconds=self.access_ttl_seconds
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=raw_token,
            session_id=session.id,
            expires_in=self.access_ttl_seconds,
            refresh_expires_at=session.expires_at,
        )

    def _handle_reuse(self, session: RefreshSession, now: datetime, client: ClientContext | None = None) -> None:
        """Replay response for a token that was already consumed."""
        logger.warning("Refresh token reuse detected for session %s (user %s)", session.id, session.user_id)
        if not self.revoke_lineage_on_reuse:
            return
        lineage: list[str] = []
        frontier = [session.id]
        seen = {session.id}
        while frontier:
            children = [c for c in self.store.list_successor_ids(frontier) if c not in seen]
            seen.update(children)
            lineage.extend(children)
            frontier = children
        revoked = self.store.revoke_sessions(lineage, now)
        for session_id in revoked:
            self.recorder.record(
                session_id,
                AuditEventType.revoked,
                {"reason": "replay_detected", "replayed_session": session.id},
                user_id=session.user_id,
                client=client,
                at=now,
            )
        if revoked:
            logger.warning("Revoked %d descendant session(s) of replayed session %s", len(revoked), session.id)

    def _enforce_session_cap(self, user_id: int, now: datetime, keep: str) -> None:
        """Revoke the oldest active sessions beyond max_active_sessions.

        `keep` is the session just handed out; it always survives, even when
        several sessions share the same issued_at.
        """
        active = self.store.list_active_sessions(user_id, now)
        if len(active) <= self.max_active_sessions:
            return
        others = [s.id for s in active if s.id != keep]
        excess = others[self.max_active_sessions - 1 :]
        for session_id in self.store.revoke_sessions(excess, now):
            self.recorder.record(
                session_id, AuditEventType.revoked, {"reason": "session_limit"}, user_id=user_id, at=now
            )
