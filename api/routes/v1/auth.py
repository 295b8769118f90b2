"""
api/routes/v1/auth.py -- Session and account management REST endpoints.

Routes:
  POST   /api/v1/auth/login                -- password login; returns token pair
  POST   /api/v1/auth/refresh              -- rotate a refresh token
  POST   /api/v1/auth/logout               -- revoke a refresh token; 204
  POST   /api/v1/auth/logout-all           -- revoke all of the caller's sessions
  GET    /api/v1/auth/sessions             -- the caller's active sessions
  POST   /api/v1/auth/revoke-session       -- revoke one of the caller's sessions; 204
  GET    /api/v1/auth/me                   -- current user info
  GET    /api/v1/auth/users                -- list users (admin only)
  PATCH  /api/v1/auth/users/{id}           -- update name/role/password (admin only)
  DELETE /api/v1/auth/users/{id}           -- delete a user (admin only)
  POST   /api/v1/auth/users/{id}/protect   -- elevate to protected (admin only)

Handlers are plain `def` on purpose: FastAPI runs them in its worker thread
pool, so bcrypt and blocking store calls never stall the event loop.

Domain errors (AuthenticationError, SessionRevoked, ProtectedAccountViolation,
...) propagate to the AccessBridgeError handler in api/main.py, which renders
the shared ErrorResponse envelope.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    RefreshRequest,
    RevokeAllResponse,
    RevokeSessionRequest,
    SessionListResponse,
    SessionRow,
    TokenResponse,
    UserPatch,
    UserResponse,
)
from auth.dependencies import client_context, get_current_user, require_admin
from auth.guard import ProtectedAccountGuard
from auth.models import ClientContext, Credential
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.tokens import authenticate, hash_password
from core.config import get_settings

router = APIRouter()


def _no_store(content: dict, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=content)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _target_user(request: Request, user_id: int) -> Credential:
    user_store: UserStore = request.app.state.user_store
    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest, client: ClientContext = Depends(client_context)) -> JSONResponse:
    """Match the credential and open a new refresh session.

    authenticate() equalizes timing and records login_failed on a mismatch.
    Wrong email and wrong password produce the same 401.
    """
    state = request.app.state
    user = authenticate(state.user_store, body.email, body.password, recorder=state.audit, client=client)
    tokens = state.sessions.issue(user.id, client)
    return _no_store(TokenResponse.from_tokens(tokens, user).model_dump(mode="json"))


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest, client: ClientContext = Depends(client_context)) -> JSONResponse:
    """Rotate a refresh token. A reused token answers 401 session_revoked."""
    sessions: SessionManager = request.app.state.sessions
    tokens = sessions.rotate(body.refresh_token, client)
    return _no_store(TokenResponse.from_tokens(tokens).model_dump(mode="json"))


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: RefreshRequest, client: ClientContext = Depends(client_context)) -> Response:
    """Revoke the given refresh token. Unknown or already-revoked tokens also get 204."""
    sessions: SessionManager = request.app.state.sessions
    sessions.revoke(body.refresh_token, client)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=RevokeAllResponse)
def logout_all(
    request: Request,
    current_user: Credential = Depends(get_current_user),
    client: ClientContext = Depends(client_context),
) -> RevokeAllResponse:
    sessions: SessionManager = request.app.state.sessions
    return RevokeAllResponse(revoked_sessions=sessions.revoke_all(current_user.id, client))


@router.get("/auth/sessions", response_model=SessionListResponse)
def list_sessions(request: Request, current_user: Credential = Depends(get_current_user)) -> SessionListResponse:
    sessions: SessionManager = request.app.state.sessions
    active = sessions.list_active(current_user.id)
    return SessionListResponse(
        data=[SessionRow.from_session(s) for s in active],
        count=len(active),
        max_active_sessions=sessions.max_active_sessions,
    )


@router.post("/auth/revoke-session", status_code=204)
def revoke_session(
    request: Request,
    body: RevokeSessionRequest,
    current_user: Credential = Depends(get_current_user),
    client: ClientContext = Depends(client_context),
) -> Response:
    """Revoke one of the caller's own sessions. Someone else's session id is a 404."""
    sessions: SessionManager = request.app.state.sessions
    sessions.revoke_session_id(current_user.id, body.session_id, client)
    return Response(status_code=204)


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: Credential = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_credential(current_user)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(request: Request, current_user: Credential = Depends(require_admin)) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_credential(u) for u in user_store.list_credentials()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: Credential = Depends(require_admin),
) -> UserResponse:
    """Update name, role or password through the protected-account guard.

    A protected account accepts name changes only; password or role changes
    answer 403 protected_account.
    """
    guard: ProtectedAccountGuard = request.app.state.guard
    target = _target_user(request, user_id)
    change = body.model_dump(exclude_none=True)
    if not change:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    # Check before paying for bcrypt.
    guard.guard_mutation(target, change)
    password_hash = hash_password(change["password"]) if "password" in change else None
    updated = guard.apply_mutation(target, change, password_hash=password_hash)
    return UserResponse.from_credential(updated)


@router.delete("/auth/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: Credential = Depends(require_admin),
    client: ClientContext = Depends(client_context),
) -> Response:
    """Delete an unprotected account and revoke its sessions."""
    guard: ProtectedAccountGuard = request.app.state.guard
    target = _target_user(request, user_id)
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_delete", "message": "You cannot delete your own account."},
        )
    guard.guard_deletion(target)
    request.app.state.sessions.revoke_all(target.id, client)
    guard.delete(target)
    return Response(status_code=204)


@router.post("/auth/users/{user_id}/protect", response_model=UserResponse)
def protect_user(request: Request, user_id: int, current_user: Credential = Depends(require_admin)) -> UserResponse:
    """Elevate an account to protected. Idempotent; there is no inverse."""
    guard: ProtectedAccountGuard = request.app.state.guard
    target = _target_user(request, user_id)
    return UserResponse.from_credential(guard.elevate(target))
