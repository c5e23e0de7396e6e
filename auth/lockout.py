"""
auth/lockout.py -- Failed-login lockout policy.

A pure state machine over LoginState; it never touches the store. The session
service reads the current state, asks the policy for the next one, and
persists it with a compare-and-set.

  Open   -> Open    failed attempt, attempts + 1 < max: count it
  Open   -> Locked  failed attempt, attempts + 1 >= max: lock, reset count
  Locked -> Locked  any attempt while locked_until > now: refused, no state change
  Locked -> Open    locked_until <= now: the lock lapses lazily on next access
  Open   -> Open    success: clear any partial streak

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta

from auth.models import LoginState
from core.config import Settings


class LockoutPolicy:
    def __init__(self, settings: Settings) -> None:
        self.max_attempts = settings.max_login_attempts
        self.lock_duration = timedelta(seconds=settings.lock_duration_seconds)

    def is_locked(self, state: LoginState, now: datetime) -> bool:
        return state.locked_until is not None and state.locked_until > now

    def remaining_minutes(self, state: LoginState, now: datetime) -> int:
        """Whole minutes left on the lock, rounded up. 0 when not locked."""
        if not self.is_locked(state, now):
            return 0
        remaining = (state.locked_until - now).total_seconds()
        return max(1, math.ceil(remaining / 60))

    def on_failure(self, state: LoginState, now: datetime) -> LoginState:
        """Next state after a failed password verification."""
        attempts = state.attempts + 1
        if attempts >= self.max_attempts:
            return LoginState(attempts=0, locked_until=now + self.lock_duration)
        # A lapsed lock is dropped here rather than carried forward.
        return LoginState(attempts=attempts, locked_until=None)

    def on_success(self, state: LoginState) -> LoginState | None:
        """Next state after a successful login, or None if nothing changes."""
        if state.attempts > 0 or state.locked_until is not None:
            return LoginState()
        return None
