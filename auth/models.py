"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Stores and the
session service do the work; these classes only own the domain shape.

Timestamps that drive decisions (locked_until, expires_at) are timezone-aware
UTC datetimes. created_at is kept as the ISO 8601 string the store wrote.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class LoginState:
    """The lockout bookkeeping pair persisted on every account.

    attempts counts consecutive failed verifications since the last success
    or the last lock. locked_until is None when no lock has been recorded.
    Whenever locked_until is set, attempts is 0.
    """

    attempts: int = 0
    locked_until: datetime | None = None


@dataclass(frozen=True)
class PublicAccount:
    """The caller-visible view of an Account. Never carries the password hash."""

    id: str
    email: str
    name: str
    created_at: str | None = None


@dataclass
class Account:
    """A registered account holder.

    email is stored case-normalized (stripped, lower-cased). password_hash is
    a bcrypt digest; the plaintext never reaches the store.

    id is None before the record is written to the database.
    """

    email: str
    name: str
    password_hash: str
    id: str | None = None
    login_attempts: int = 0
    locked_until: datetime | None = None
    created_at: str | None = None

    @property
    def login_state(self) -> LoginState:
        return LoginState(attempts=self.login_attempts, locked_until=self.locked_until)

    def public(self) -> PublicAccount:
        return PublicAccount(id=self.id, email=self.email, name=self.name, created_at=self.created_at)


@dataclass
class RefreshToken:
    """A stored refresh-token capability.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw value is handed
    to the client once at login and never persisted, so a copy of the
    database cannot be replayed against the refresh endpoint.
    """

    token_hash: str
    account_id: str
    expires_at: datetime
    created_at: str | None = None


@dataclass(frozen=True)
class AccessTokenPayload:
    """Verified claims of an access token."""

    account_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LoginResult:
    """Everything a successful login hands back to the transport layer."""

    account: PublicAccount
    access_token: str
    refresh_token: str
