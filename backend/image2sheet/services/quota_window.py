"""
Image2Sheet Backend — Quota Window Arithmetic
==============================================

What:  Pure helpers shared by the guest and user quota trackers.
How:   A counter is a (count, window_start) pair. `advance_window` moves it
       through the Fresh → Stale → Reset states without touching storage;
       the trackers decide how (and whether) to persist the result.

State machine:
    Fresh:  now - window_start <  window  → state unchanged
    Stale:  now - window_start >= window  → count is logically zero
    Reset:  the Stale state rewritten as (0, now)

Both trackers express times as aware UTC datetimes.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

UNLIMITED = "unlimited"

SECONDS_PER_HOUR = 3600


@dataclass(frozen=True)
class WindowState:
    """A quota counter and the start of its current counting window."""

    count: int
    window_start: datetime


def window_elapsed(state: WindowState, now: datetime, window: timedelta) -> bool:
    """True once the counting window has fully passed."""
    return now - state.window_start >= window


def advance_window(
    state: WindowState, now: datetime, window: timedelta
) -> Tuple[WindowState, bool]:
    """
    Return the state as it should be at `now`, and whether a reset happened.

    Example:
        (5, 09:00 day 1) advanced to 10:00 day 2 with a 24h window
        → ((0, 10:00 day 2), True)
    """
    if window_elapsed(state, now, window):
        return replace(state, count=0, window_start=now), True
    return state, False


def effective_count(state: WindowState, now: datetime, window: timedelta) -> int:
    """The count as seen at `now` (zero when the window has elapsed), without resetting."""
    return 0 if window_elapsed(state, now, window) else state.count


def hours_until_reset(state: WindowState, now: datetime, window: timedelta) -> int:
    """Whole hours (rounded up) left in the window; 0 once it has elapsed."""
    remaining = (window - (now - state.window_start)).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining / SECONDS_PER_HOUR)


@dataclass(frozen=True)
class QuotaDecision:
    """
    Outcome of an admission check.

    `limit` / `remaining` are the UNLIMITED sentinel for premium callers.
    `reason` is set only on denial.
    """

    allowed: bool
    current: int
    limit: Union[int, str]
    remaining: Union[int, str]
    hours_until_reset: int = 0
    reason: Optional[str] = None

    @classmethod
    def unlimited(cls, current: int = 0) -> "QuotaDecision":
        return cls(allowed=True, current=current, limit=UNLIMITED, remaining=UNLIMITED)

    def as_usage(self) -> dict:
        """Usage block returned to clients alongside an extraction."""
        return {
            "current": self.current,
            "limit": self.limit,
            "remaining": self.remaining,
            "hours_until_reset": self.hours_until_reset,
        }


def decide(state: WindowState, now: datetime, window: timedelta, limit: int, reason: str) -> QuotaDecision:
    """Admit while the (already advanced) count is below `limit`, deny otherwise."""
    hours_left = hours_until_reset(state, now, window)
    if state.count >= limit:
        return QuotaDecision(
            allowed=False,
            current=state.count,
            limit=limit,
            remaining=0,
            hours_until_reset=hours_left,
            reason=reason,
        )
    return QuotaDecision(
        allowed=True,
        current=state.count,
        limit=limit,
        remaining=limit - state.count,
        hours_until_reset=hours_left,
    )
