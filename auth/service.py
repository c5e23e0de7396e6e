"""
auth/service.py -- Session lifecycle orchestration.

SessionService composes the store, hasher, token issuer and lockout policy
into the operations the transport layer calls: register, login, refresh,
logout and access-token verification.

Login ordering (each step only runs if the previous one passed):
  1. Unknown email       -> dummy bcrypt run, then InvalidCredentialsError.
  2. Lock in force       -> AccountLockedError; the password is not checked.
  3. Wrong password      -> lockout failure transition, compare-and-set,
                            then InvalidCredentialsError (AccountLockedError
                            if this failure tripped the lock).
  4. Correct password    -> clear any streak, persist a refresh token,
                            issue an access token.

Refresh tokens are not rotated on use: the same token keeps minting access
tokens until logout or expiry. Concurrent refreshes with one token both
succeed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
)
from auth.lockout import LockoutPolicy
from auth.models import AccessTokenPayload, Account, LoginResult, LoginState, PublicAccount
from auth.passwords import PasswordHasher
from auth.store import CredentialStore
from auth.tokens import TokenIssuer
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("sessionguard.auth")


def normalize_email(email: str) -> str:
    return email.strip().lower()


class SessionService:
    """Register, log in, refresh and log out account holders.

    Usage:
        service = SessionService.from_settings(store, settings)
        service.register("a@x.com", "Abcd123!", "Ann")
        result = service.login("a@x.com", "Abcd123!")
        service.refresh_access_token(result.refresh_token)
        service.logout(result.refresh_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        tokens: TokenIssuer,
        lockout: LockoutPolicy,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.tokens = tokens
        self.lockout = lockout
        self._clock = clock

    @classmethod
    def from_settings(cls, store: CredentialStore, settings: Settings, clock: Clock = utc_now) -> SessionService:
        return cls(
            store=store,
            hasher=PasswordHasher(settings),
            tokens=TokenIssuer(settings, clock=clock),
            lockout=LockoutPolicy(settings),
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, name: str) -> PublicAccount:
        """Create an account. Raises DuplicateAccountError if the email is taken.

        Raises InvalidPasswordError for a password over 72 UTF-8 bytes.

        There is no existence pre-check: the store's UNIQUE constraint is the
        single arbiter, so concurrent registrations cannot both succeed.
        """
        account = self.store.create_account(
            Account(
                email=normalize_email(email),
                name=name.strip(),
                password_hash=self.hasher.hash(password),
            )
        )
        logger.info("Registered account %s", account.id)
        return account.public()

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> LoginResult:
        account = self.store.find_account_by_email(normalize_email(email))
        if account is None:
            self.hasher.dummy_verify(password)
            raise InvalidCredentialsError()

        now = self._clock()
        state = account.login_state
        if self.lockout.is_locked(state, now):
            raise AccountLockedError(self.lockout.remaining_minutes(state, now))

        if not self.hasher.verify(password, account.password_hash):
            self._record_failure(account.id, state)
            raise InvalidCredentialsError()

        self._record_success(account.id, state)

        refresh_token = self.tokens.issue_refresh_token()
        self.store.create_refresh_token(
            self.tokens.hash_refresh_token(refresh_token),
            account.id,
            self.tokens.refresh_token_expiry(),
        )
        access_token = self.tokens.issue_access_token(account.id, account.email)
        return LoginResult(account=account.public(), access_token=access_token, refresh_token=refresh_token)

    def _record_failure(self, account_id: str, state: LoginState) -> None:
        """Apply the failure transition with compare-and-set.

        A CAS miss means another request committed a change to this account
        first. The row is re-read and the transition re-applied on top of it,
        so no failure is dropped. If the re-read shows a lock in force, this
        attempt reports the lock instead of counting.
        """
        while True:
            now = self._clock()
            if self.lockout.is_locked(state, now):
                raise AccountLockedError(self.lockout.remaining_minutes(state, now))
            next_state = self.lockout.on_failure(state, now)
            if self.store.update_login_state(account_id, next_state, expected=state):
                if next_state.locked_until is not None:
                    logger.info("Account %s locked after %d failed logins", account_id, self.lockout.max_attempts)
                    raise AccountLockedError(self.lockout.remaining_minutes(next_state, now))
                return
            state = self._reload_state(account_id)

    def _record_success(self, account_id: str, state: LoginState) -> None:
        while True:
            now = self._clock()
            if self.lockout.is_locked(state, now):
                # A concurrent failed attempt locked the account after our
                # lock check; the lock wins over a correct password.
                raise AccountLockedError(self.lockout.remaining_minutes(state, now))
            next_state = self.lockout.on_success(state)
            if next_state is None:
                return
            if self.store.update_login_state(account_id, next_state, expected=state):
                return
            state = self._reload_state(account_id)

    def _reload_state(self, account_id: str) -> LoginState:
        account = self.store.find_account_by_id(account_id)
        if account is None:
            raise InvalidCredentialsError()
        return account.login_state

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def refresh_access_token(self, refresh_token: str) -> str:
        """Return a new access token for the refresh token's owner.

        Raises InvalidOrExpiredTokenError if the token is unknown, deleted or
        expired. The refresh token itself stays valid.
        """
        stored = self.store.find_refresh_token(self.tokens.hash_refresh_token(refresh_token))
        if stored is None or stored.expires_at <= self._clock():
            raise InvalidOrExpiredTokenError()
        account = self.store.find_account_by_id(stored.account_id)
        if account is None:
            raise InvalidOrExpiredTokenError()
        return self.tokens.issue_access_token(account.id, account.email)

    def logout(self, refresh_token: str) -> None:
        """Delete the refresh token. Logging out an unknown token is not an error."""
        self.store.delete_refresh_token(self.tokens.hash_refresh_token(refresh_token))

    def verify_access_token(self, token: str) -> AccessTokenPayload:
        return self.tokens.verify_access_token(token)

    def purge_expired_refresh_tokens(self) -> int:
        removed = self.store.purge_expired_refresh_tokens(self._clock())
        if removed:
            logger.info("Purged %d expired refresh tokens", removed)
        return removed
