"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens travel in the Authorization: Bearer header. Refresh tokens never
do -- they live in an httpOnly cookie handled by api/routes/v1/auth.py.

get_current_account() returns the verified token payload or raises. A missing
header is an HTTPException(401) raised here; a present-but-bad token raises
InvalidTokenError, which the app-level AuthError handler turns into the same
401 status.

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AccessTokenPayload
from auth.service import SessionService


def get_session_service(request: Request) -> SessionService:
    """Return the SessionService wired into app.state by the lifespan."""
    return request.app.state.session_service


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_account(request: Request) -> AccessTokenPayload:
    """Require a valid access token. Raises HTTP 401 if none was supplied.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(account: AccessTokenPayload = Depends(get_current_account)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return get_session_service(request).verify_access_token(token)
