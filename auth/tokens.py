"""
auth/tokens.py -- Access-token JWTs and opaque refresh tokens.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry account_id, email, iat and exp. They are stateless: verification
       needs no store lookup. Any failure -- bad signature, other algorithm,
       missing claims, expiry -- raises the same InvalidTokenError so callers
       cannot tell which check tripped.

       Expiry is checked against the injected clock, not inside jose, so lock
       and token expiry share one time source.

  Refresh tokens: secrets.token_hex(64) gives 512 bits of entropy. The value
       carries no account information; it is a capability looked up in the
       store. We store HMAC-SHA256(SECRET_KEY, raw_token) so lookup is O(1)
       and a database copy alone is useless. bcrypt's slowness is unnecessary
       for high-entropy values.

  Rotating SECRET_KEY invalidates every outstanding access AND refresh token.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.errors import InvalidTokenError
from auth.models import AccessTokenPayload
from core.clock import Clock, utc_now
from core.config import Settings

ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("account_id", "email", "iat", "exp")


class TokenIssuer:
    """Mints and verifies access tokens; mints refresh tokens."""

    def __init__(self, settings: Settings, clock: Clock = utc_now) -> None:
        self._secret_key = settings.secret_key
        self.access_token_lifetime = timedelta(seconds=settings.access_token_expire_seconds)
        self.refresh_token_lifetime = timedelta(days=settings.refresh_token_expire_days)
        self._clock = clock

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, account_id: str, email: str) -> str:
        issued_at = int(self._clock().timestamp())
        expires_at = issued_at + int(self.access_token_lifetime.total_seconds())
        payload = {
            "sub": account_id,
            "account_id": account_id,
            "email": email,
            "iat": issued_at,
            "exp": expires_at,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    def verify_access_token(self, token: str) -> AccessTokenPayload:
        """Decode and verify a JWT. Raises InvalidTokenError on any failure."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidTokenError() from exc

        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise InvalidTokenError()
        iat, exp = payload["iat"], payload["exp"]
        if not isinstance(iat, int) or not isinstance(exp, int):
            raise InvalidTokenError()
        if not isinstance(payload["account_id"], str) or not isinstance(payload["email"], str):
            raise InvalidTokenError()

        expires_at = datetime.fromtimestamp(exp, timezone.utc)
        if expires_at <= self._clock():
            raise InvalidTokenError()

        return AccessTokenPayload(
            account_id=payload["account_id"],
            email=payload["email"],
            issued_at=datetime.fromtimestamp(iat, timezone.utc),
            expires_at=expires_at,
        )

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def issue_refresh_token(self) -> str:
        """Return a new opaque refresh token (128 hex chars)."""
        return secrets.token_hex(64)

    def hash_refresh_token(self, raw_token: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, raw_token) as the store lookup key."""
        return hmac.new(
            self._secret_key.encode(),
            raw_token.encode(),
            hashlib.sha256,
        ).hexdigest()

    def refresh_token_expiry(self) -> datetime:
        return self._clock() + self.refresh_token_lifetime
