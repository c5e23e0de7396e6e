"""
api/routes/v1/auth.py -- Registration and session REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create an account; 201
  POST /api/v1/auth/login      -- password login; returns access token, sets refresh cookie
  POST /api/v1/auth/refresh    -- new access token from the refresh cookie
  POST /api/v1/auth/logout     -- deletes the refresh token, clears the cookie; 200
  GET  /api/v1/auth/me         -- identity from the Bearer access token

Security:
  POST /login is rate-limited per client address (LOGIN_RATE_LIMIT).
  Access tokens go in the response body and come back in the Authorization
  header. Refresh tokens only ever travel in an httpOnly, samesite=strict
  cookie scoped to /api/v1/auth, so page scripts cannot read them.
  Cache-Control: no-store on every response that carries a credential.

Failures raised by the core (auth.errors.AuthError) are not caught here; the
app-level handler in api/main.py maps them to status codes.

Handlers are plain `def`: bcrypt is CPU-bound and FastAPI runs sync handlers
in its thread pool instead of blocking the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    TokenResponse,
)
from auth.dependencies import get_current_account, get_session_service
from auth.models import AccessTokenPayload, PublicAccount
from auth.service import SessionService
from core.config import Settings

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /api/v1/auth/register: public
# - POST /api/v1/auth/login:    public, rate-limited
# - POST /api/v1/auth/refresh:  refresh cookie required
# - POST /api/v1/auth/logout:   public -- clearing a cookie needs no prior auth
# - GET  /api/v1/auth/me:       requires Bearer access token
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(
    body: RegisterRequest,
    service: SessionService = Depends(get_session_service),
) -> RegisterResponse:
    """Create an account. 409 if the email is already registered."""
    account = service.register(body.email, body.password, body.name)
    return RegisterResponse(account=_account_to_response(account))


# Order matters: the router must register slowapi's wrapper, which is where
# per-route limits are checked. SlowAPIMiddleware only applies default limits.
@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)
def login(
    request: Request,
    body: LoginRequest,
    service: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Authenticate with email and password.

    The access token is returned in the body; the refresh token is set as a
    cookie and never appears in the body.
    """
    settings: Settings = request.app.state.settings
    result = service.login(body.email, body.password)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=result.access_token,
            expires_in=settings.access_token_expire_seconds,
            account=_account_to_response(result.account),
        ).model_dump(),
    )
    resp.set_cookie(
        REFRESH_COOKIE,
        value=result.refresh_token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_expire_seconds,
        path=REFRESH_COOKIE_PATH,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(
    request: Request,
    service: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Mint a new access token from the refresh cookie. The cookie is left as is."""
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if not refresh_token:
        raise HTTPException(
            status_code=401,
            detail={"code": "missing_refresh_token", "message": "Refresh token not provided."},
        )
    settings: Settings = request.app.state.settings
    access_token = service.refresh_access_token(refresh_token)
    resp = JSONResponse(
        content=TokenResponse(
            access_token=access_token,
            expires_in=settings.access_token_expire_seconds,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    service: SessionService = Depends(get_session_service),
) -> JSONResponse:
    """Delete the refresh token (if any) and clear the cookie. Always 200."""
    refresh_token = request.cookies.get(REFRESH_COOKIE)
    if refresh_token:
        service.logout(refresh_token)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=REFRESH_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(account: AccessTokenPayload = Depends(get_current_account)) -> MeResponse:
    """Return the identity asserted by the caller's access token."""
    return MeResponse(
        account_id=account.account_id,
        email=account.email,
        expires_at=account.expires_at.isoformat(),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _account_to_response(account: PublicAccount) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        name=account.name,
        created_at=account.created_at,
    )
