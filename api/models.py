"""
API request and response models for SessionGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Shape checks (email format, password strength, name length) live here, not in
the core: the core accepts whatever the transport hands it.
"""

import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.passwords import MAX_PASSWORD_BYTES

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# Upper, lower, digit and one special character.
_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[@$!%*?&]"), "one of @$!%*?&"),
)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=8, max_length=MAX_PASSWORD_BYTES)
    name: str = Field(min_length=2, max_length=255)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: object) -> object:
        """Trim before the min_length check so "  A " does not count as a name."""
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def check_strength(cls, value: str) -> str:
        """Require every character class and stay inside bcrypt's 72-byte window.

        max_length counts characters; multi-byte characters can still push the
        UTF-8 encoding past the limit, hence the explicit byte check.
        """
        if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(value)]
        if missing:
            raise ValueError(f"Password must contain {', '.join(missing)}.")
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public account fields. The password hash never leaves the core."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    created_at: Optional[str] = None


class RegisterResponse(BaseModel):
    message: str = "Account created."
    account: AccountResponse


class TokenResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh."""

    access_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int


class LoginResponse(TokenResponse):
    account: AccountResponse


class MeResponse(BaseModel):
    """Identity asserted by the caller's access token."""

    account_id: str
    email: str
    expires_at: str


class MessageResponse(BaseModel):
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    retry_after_minutes: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
