"""Unit tests for auth/service.py -- SessionService orchestration.

Covers:
- register: normalized email, public fields only, duplicate rejection
- login: generic failure for unknown email and wrong password, lockout
  ordering (locked accounts never reach password verification), recovery
  after the lock lapses, streak reset on success
- refresh: same identity, no rotation, expiry, logout revocation
- logout idempotence and access-token verification delegation
- the end-to-end "a@x.com" lockout scenario with a frozen clock
"""

from unittest.mock import patch

import pytest

from auth.errors import (
    AccountLockedError,
    DuplicateAccountError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidPasswordError,
    InvalidTokenError,
)
from auth.models import LoginState, PublicAccount
from auth.service import SessionService


def _fail(service: SessionService, times: int, email: str = "a@x.com") -> list[Exception]:
    errors = []
    for _ in range(times):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)) as exc_info:
            service.login(email, "wrong-password")
        errors.append(exc_info.value)
    return errors


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_returns_public_fields_only(self, service: SessionService) -> None:
        account = service.register("a@x.com", "Abcd123!", "Ann")
        assert isinstance(account, PublicAccount)
        assert account.email == "a@x.com"
        assert account.name == "Ann"
        assert account.id
        assert not hasattr(account, "password_hash")

    def test_password_stored_hashed(self, service: SessionService, registered) -> None:
        stored = service.store.find_account_by_email("a@x.com")
        assert stored.password_hash != "Abcd123!"
        assert service.hasher.verify("Abcd123!", stored.password_hash)

    def test_email_is_normalized(self, service: SessionService) -> None:
        account = service.register("  Ann@Example.COM ", "Abcd123!", "Ann")
        assert account.email == "ann@example.com"
        assert service.login("ANN@example.com", "Abcd123!").account.id == account.id

    def test_duplicate_normalized_email_rejected(self, service: SessionService, registered) -> None:
        with pytest.raises(DuplicateAccountError):
            service.register("A@X.COM", "Other123!", "Someone")
        assert service.store.find_account_by_email("a@x.com").id == registered.id


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_tokens(self, service: SessionService, registered) -> None:
        result = service.login("a@x.com", "Abcd123!")
        assert result.account == registered
        payload = service.verify_access_token(result.access_token)
        assert payload.account_id == registered.id
        assert payload.email == "a@x.com"
        stored = service.store.find_refresh_token(service.tokens.hash_refresh_token(result.refresh_token))
        assert stored is not None
        assert stored.account_id == registered.id

    def test_each_login_gets_its_own_refresh_token(self, service: SessionService, registered) -> None:
        first = service.login("a@x.com", "Abcd123!")
        second = service.login("a@x.com", "Abcd123!")
        assert first.refresh_token != second.refresh_token
        assert service.refresh_access_token(first.refresh_token)
        assert service.refresh_access_token(second.refresh_token)

    def test_unknown_email_and_wrong_password_are_indistinguishable(
        self, service: SessionService, registered
    ) -> None:
        with pytest.raises(InvalidCredentialsError) as unknown:
            service.login("nobody@x.com", "Abcd123!")
        with pytest.raises(InvalidCredentialsError) as wrong:
            service.login("a@x.com", "Wrong123!")
        assert type(unknown.value) is type(wrong.value)
        assert unknown.value.message == wrong.value.message

    def test_unknown_email_still_runs_bcrypt(self, service: SessionService) -> None:
        with patch.object(service.hasher, "dummy_verify", wraps=service.hasher.dummy_verify) as dummy:
            with pytest.raises(InvalidCredentialsError):
                service.login("nobody@x.com", "Abcd123!")
        dummy.assert_called_once_with("Abcd123!")

    def test_failures_are_counted(self, service: SessionService, registered) -> None:
        _fail(service, 3)
        assert service.store.find_account_by_email("a@x.com").login_attempts == 3

    def test_success_resets_partial_streak(self, service: SessionService, registered) -> None:
        _fail(service, 3)
        service.login("a@x.com", "Abcd123!")
        assert service.store.find_account_by_email("a@x.com").login_state == LoginState()

    def test_threshold_failure_locks(self, service: SessionService, registered) -> None:
        errors = _fail(service, 5)
        assert all(isinstance(e, InvalidCredentialsError) for e in errors[:4])
        assert isinstance(errors[4], AccountLockedError)
        assert errors[4].remaining_minutes == 15
        account = service.store.find_account_by_email("a@x.com")
        assert account.login_attempts == 0
        assert account.locked_until is not None

    def test_locked_account_skips_password_check(self, service: SessionService, registered) -> None:
        _fail(service, 5)
        with patch.object(service.hasher, "verify", wraps=service.hasher.verify) as verify:
            with pytest.raises(AccountLockedError):
                service.login("a@x.com", "Abcd123!")
            with pytest.raises(AccountLockedError):
                service.login("a@x.com", "wrong-password")
        verify.assert_not_called()

    def test_locked_attempts_do_not_extend_lock(self, service: SessionService, registered, clock) -> None:
        _fail(service, 5)
        locked_until = service.store.find_account_by_email("a@x.com").locked_until
        clock.advance(minutes=5)
        with pytest.raises(AccountLockedError) as exc_info:
            service.login("a@x.com", "wrong-password")
        assert exc_info.value.remaining_minutes == 10
        assert service.store.find_account_by_email("a@x.com").locked_until == locked_until

    def test_remaining_minutes_round_up(self, service: SessionService, registered, clock) -> None:
        _fail(service, 5)
        clock.advance(minutes=14, seconds=1)
        with pytest.raises(AccountLockedError) as exc_info:
            service.login("a@x.com", "Abcd123!")
        assert exc_info.value.remaining_minutes == 1

    def test_lock_lapses_lazily(self, service: SessionService, registered, clock) -> None:
        _fail(service, 5)
        clock.advance(minutes=15)
        result = service.login("a@x.com", "Abcd123!")
        assert result.account.id == registered.id
        assert service.store.find_account_by_email("a@x.com").login_state == LoginState()

    def test_failure_after_lapse_starts_new_window(self, service: SessionService, registered, clock) -> None:
        _fail(service, 5)
        clock.advance(minutes=16)
        errors = _fail(service, 1)
        assert isinstance(errors[0], InvalidCredentialsError)
        account = service.store.find_account_by_email("a@x.com")
        assert account.login_attempts == 1
        assert account.locked_until is None

    def test_lockout_is_per_account(self, service: SessionService, registered) -> None:
        service.register("b@x.com", "Abcd123!", "Bob")
        _fail(service, 5)
        assert service.login("b@x.com", "Abcd123!").account.email == "b@x.com"


# ---------------------------------------------------------------------------
# Refresh / logout / verify
# ---------------------------------------------------------------------------


class TestTokens:
    def test_refresh_yields_same_identity(self, service: SessionService, registered, clock) -> None:
        result = service.login("a@x.com", "Abcd123!")
        clock.advance(minutes=1)
        new_token = service.refresh_access_token(result.refresh_token)
        assert new_token != result.access_token
        original = service.verify_access_token(result.access_token)
        refreshed = service.verify_access_token(new_token)
        assert (refreshed.account_id, refreshed.email) == (original.account_id, original.email)
        assert refreshed.expires_at > original.expires_at

    def test_refresh_token_is_not_rotated(self, service: SessionService, registered) -> None:
        result = service.login("a@x.com", "Abcd123!")
        for _ in range(3):
            service.refresh_access_token(result.refresh_token)
        token_hash = service.tokens.hash_refresh_token(result.refresh_token)
        assert service.store.find_refresh_token(token_hash) is not None

    def test_refresh_outlives_access_token(self, service: SessionService, registered, clock) -> None:
        result = service.login("a@x.com", "Abcd123!")
        clock.advance(hours=1)
        with pytest.raises(InvalidTokenError):
            service.verify_access_token(result.access_token)
        fresh = service.refresh_access_token(result.refresh_token)
        assert service.verify_access_token(fresh).account_id == registered.id

    def test_expired_refresh_token_rejected(self, service: SessionService, registered, clock) -> None:
        result = service.login("a@x.com", "Abcd123!")
        clock.advance(days=7)
        with pytest.raises(InvalidOrExpiredTokenError):
            service.refresh_access_token(result.refresh_token)

    def test_unknown_refresh_token_rejected(self, service: SessionService) -> None:
        with pytest.raises(InvalidOrExpiredTokenError):
            service.refresh_access_token("not-a-real-token")

    def test_logout_revokes_refresh_token(self, service: SessionService, registered) -> None:
        result = service.login("a@x.com", "Abcd123!")
        service.logout(result.refresh_token)
        with pytest.raises(InvalidOrExpiredTokenError):
            service.refresh_access_token(result.refresh_token)

    def test_logout_only_revokes_that_session(self, service: SessionService, registered) -> None:
        first = service.login("a@x.com", "Abcd123!")
        second = service.login("a@x.com", "Abcd123!")
        service.logout(first.refresh_token)
        assert service.refresh_access_token(second.refresh_token)

    def test_logout_is_idempotent(self, service: SessionService, registered) -> None:
        result = service.login("a@x.com", "Abcd123!")
        service.logout(result.refresh_token)
        service.logout(result.refresh_token)
        service.logout("never-issued")

    def test_verify_rejects_garbage(self, service: SessionService) -> None:
        with pytest.raises(InvalidTokenError):
            service.verify_access_token("garbage")

    def test_purge_expired_refresh_tokens(self, service: SessionService, registered, clock) -> None:
        old = service.login("a@x.com", "Abcd123!")
        clock.advance(days=6)
        recent = service.login("a@x.com", "Abcd123!")
        clock.advance(days=1)
        assert service.purge_expired_refresh_tokens() == 1
        assert service.store.find_refresh_token(service.tokens.hash_refresh_token(old.refresh_token)) is None
        assert service.refresh_access_token(recent.refresh_token)


# ---------------------------------------------------------------------------
# End-to-end scenario
# ---------------------------------------------------------------------------


def test_lockout_scenario(service: SessionService, clock) -> None:
    """register -> 5 wrong -> locked -> correct still locked -> wait -> success."""
    service.register("a@x.com", "Abcd123!", "Ann")

    errors = _fail(service, 5)
    assert isinstance(errors[-1], AccountLockedError)
    assert errors[-1].remaining_minutes == 15

    with pytest.raises(AccountLockedError) as exc_info:
        service.login("a@x.com", "Abcd123!")
    assert exc_info.value.remaining_minutes == 15

    clock.advance(minutes=15, seconds=1)
    result = service.login("a@x.com", "Abcd123!")
    assert result.account.email == "a@x.com"
    assert service.store.find_account_by_email("a@x.com").login_attempts == 0


def test_store_conflict_on_success_is_reevaluated(service: SessionService, registered) -> None:
    """A compare-and-set miss re-reads the account instead of overwriting it."""
    _fail(service, 2)
    original = service.store.update_login_state
    calls = []

    def flaky(account_id, state, expected=None):
        calls.append(expected)
        if len(calls) == 1:
            # Simulate a concurrent failed login landing first.
            original(account_id, LoginState(attempts=3), expected=expected)
            return False
        return original(account_id, state, expected=expected)

    with patch.object(service.store, "update_login_state", side_effect=flaky):
        service.login("a@x.com", "Abcd123!")
    assert calls == [LoginState(attempts=2), LoginState(attempts=3)]
    assert service.store.find_account_by_email("a@x.com").login_state == LoginState()


def test_repeated_store_conflicts_still_count_the_failure(service: SessionService, registered) -> None:
    """Every compare-and-set loses to another failure; this one still lands."""
    service.lockout.max_attempts = 100
    store_update = service.store.update_login_state
    interleaved = []

    def contended(account_id, state, expected=None):
        if len(interleaved) < 8:
            current = service.store.find_account_by_id(account_id).login_state
            store_update(account_id, LoginState(attempts=current.attempts + 1), expected=current)
            interleaved.append(current)
        return store_update(account_id, state, expected=expected)

    with patch.object(service.store, "update_login_state", side_effect=contended):
        with pytest.raises(InvalidCredentialsError):
            service.login("a@x.com", "wrong-password")
    assert len(interleaved) == 8
    assert service.store.find_account_by_email("a@x.com").login_attempts == 9


def test_conflicting_failures_that_lock_report_the_lock(service: SessionService, registered, clock) -> None:
    store_update = service.store.update_login_state
    landed = []

    def contended(account_id, state, expected=None):
        if not landed:
            store_update(account_id, service.lockout.on_failure(LoginState(attempts=4), clock()))
            landed.append(True)
        return store_update(account_id, state, expected=expected)

    with patch.object(service.store, "update_login_state", side_effect=contended):
        with pytest.raises(AccountLockedError):
            service.login("a@x.com", "wrong-password")
    assert service.store.find_account_by_email("a@x.com").locked_until is not None


def test_register_rejects_overlong_password(service: SessionService) -> None:
    with pytest.raises(InvalidPasswordError):
        service.register("a@x.com", "Ab1!" + "a" * 69, "Ann")
    assert service.store.find_account_by_email("a@x.com") is None
