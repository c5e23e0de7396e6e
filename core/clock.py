"""
core/clock.py -- Time source for expiry and lock-window decisions.

Every component that compares against "now" takes a Clock at construction
instead of calling datetime.now() inline, so tests can freeze and advance time.
All values are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default Clock: the current wall-clock time in UTC."""
    return datetime.now(timezone.utc)
