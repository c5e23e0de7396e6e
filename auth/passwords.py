"""
auth/passwords.py -- bcrypt password hashing.

bcrypt is used directly rather than through passlib: passlib's wrap-bug
detection builds a password longer than 72 bytes, which bcrypt 4.x+ rejects.

Every hash() call draws a fresh salt from bcrypt.gensalt(), so two digests of
the same password differ; the salt and cost factor are embedded in the digest,
which is all verify() needs.

The hasher holds no mutable state and is safe to share across threads.
"""

from __future__ import annotations

import bcrypt

from auth.errors import InvalidPasswordError
from core.config import Settings

# bcrypt only looks at the first 72 bytes of input, and bcrypt 5.x raises on
# anything longer. The API layer rejects longer passwords before they get here.
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """Salted, deliberately slow one-way hashing of passwords."""

    def __init__(self, settings: Settings) -> None:
        self.rounds = settings.bcrypt_rounds
        # Timing equalization dummy. Computed once at construction so the first
        # unknown-email login is not measurably faster than the rest.
        self._dummy_hash = self.hash("sessionguard_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt digest of plain. Raises InvalidPasswordError past 72 bytes."""
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise InvalidPasswordError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if plain matches hashed. Malformed digests never match."""
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except Exception:
            return False

    def dummy_verify(self, plain: str) -> None:
        """Burn one verification's worth of CPU against a throwaway digest.

        Called when the email is unknown so the response time does not reveal
        whether an account exists.
        """
        self.verify(plain, self._dummy_hash)
