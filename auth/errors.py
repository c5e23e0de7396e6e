"""
auth/errors.py -- Failure taxonomy for the credential core.

Every failure the core can surface has a stable machine-readable code. The
transport layer (api/main.py) maps these to HTTP status codes; nothing in
auth/ knows about HTTP.

Messages are deliberately generic where detail would leak information:
  InvalidCredentialsError is the same for unknown email and wrong password.
  InvalidTokenError is the same for expired, malformed and forged tokens.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all credential-core failures."""

    code: str = "auth_error"
    default_message: str = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class DuplicateAccountError(AuthError):
    """An account with this (normalized) email already exists."""

    code = "duplicate_account"
    default_message = "An account with this email already exists."


class InvalidCredentialsError(AuthError):
    code = "invalid_credentials"
    default_message = "Invalid email or password."


class AccountLockedError(AuthError):
    """Login refused because the account is inside a lock window.

    remaining_minutes is the ceiling of the time left, in whole minutes.
    """

    code = "account_locked"

    def __init__(self, remaining_minutes: int) -> None:
        self.remaining_minutes = remaining_minutes
        super().__init__(f"Account locked. Try again in {remaining_minutes} minutes.")


class InvalidOrExpiredTokenError(AuthError):
    """The refresh token is unknown, deleted, or past its expiry."""

    code = "invalid_refresh_token"
    default_message = "Invalid or expired refresh token."


class InvalidTokenError(AuthError):
    """The access token failed verification."""

    code = "invalid_token"
    default_message = "Invalid token."


class InvalidPasswordError(AuthError, ValueError):
    """The password cannot be hashed (longer than bcrypt's 72-byte input limit).

    Also a ValueError, since it is raised for a bad argument value.
    """

    code = "invalid_password"
    default_message = "Password is too long."


class StoreUnavailableError(AuthError):
    """The credential store could not complete the operation."""

    code = "store_unavailable"
    default_message = "Credential store unavailable."


__all__ = [
    "AuthError",
    "DuplicateAccountError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidOrExpiredTokenError",
    "InvalidTokenError",
    "InvalidPasswordError",
    "StoreUnavailableError",
]
