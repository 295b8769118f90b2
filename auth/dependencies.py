"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Requests authenticate with `Authorization: Bearer <access token>`. The access
token is a stateless JWT minted by SessionManager; refresh tokens are never
accepted here, only by the /auth/refresh and /auth/logout bodies.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not ADMIN.
client_context() captures the caller's IP address and User-Agent for the
audit trail.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import ClientContext, Credential
from auth.tokens import decode_access_token
from core.config import get_settings

ADMIN_ROLE = "ADMIN"


def try_get_current_user(request: Request) -> Credential | None:
    """Return the authenticated Credential, or None. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    if payload is None:
        return None
    return request.app.state.user_store.get_by_id(payload["user_id"])


def get_current_user(request: Request) -> Credential:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: Credential = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> Credential:
    """Require the ADMIN role. Raises HTTP 401 if unauthenticated, HTTP 403 otherwise."""
    user = get_current_user(request)
    if user.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user


def client_context(request: Request) -> ClientContext:
    """Caller IP (first X-Forwarded-For hop when trusted) and User-Agent."""
    ip_address = None
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        ip_address = forwarded.split(",")[0].strip() or None
    if ip_address is None and request.client is not None:
        ip_address = request.client.host
    return ClientContext(ip_address=ip_address, user_agent=request.headers.get("user-agent") or None)
