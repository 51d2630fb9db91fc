"""
Image2Sheet Backend — Quota Window Unit Tests
==============================================

Pure arithmetic: no storage, no event loop.
"""

from datetime import datetime, timedelta, timezone

from image2sheet.services.quota_window import (
    UNLIMITED,
    QuotaDecision,
    WindowState,
    advance_window,
    decide,
    effective_count,
    hours_until_reset,
)

DAY = timedelta(hours=24)
T0 = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class TestAdvanceWindow:
    def test_fresh_window_is_unchanged(self):
        state = WindowState(count=4, window_start=T0)
        advanced, was_reset = advance_window(state, T0 + timedelta(hours=23, minutes=59), DAY)
        assert advanced == state
        assert was_reset is False

    def test_elapsed_window_resets_to_now(self):
        state = WindowState(count=5, window_start=T0)
        now = T0 + timedelta(hours=25)
        advanced, was_reset = advance_window(state, now, DAY)
        assert advanced == WindowState(count=0, window_start=now)
        assert was_reset is True

    def test_exactly_one_window_counts_as_elapsed(self):
        state = WindowState(count=3, window_start=T0)
        advanced, was_reset = advance_window(state, T0 + DAY, DAY)
        assert was_reset is True
        assert advanced.count == 0

    def test_effective_count_does_not_reset(self):
        state = WindowState(count=5, window_start=T0)
        assert effective_count(state, T0 + timedelta(hours=1), DAY) == 5
        assert effective_count(state, T0 + timedelta(hours=30), DAY) == 0
        assert state.count == 5


class TestHoursUntilReset:
    def test_rounds_up_to_whole_hours(self):
        state = WindowState(count=0, window_start=T0)
        assert hours_until_reset(state, T0 + timedelta(hours=1), DAY) == 23
        assert hours_until_reset(state, T0 + timedelta(hours=1, minutes=1), DAY) == 23
        assert hours_until_reset(state, T0 + timedelta(hours=23, minutes=30), DAY) == 1

    def test_zero_once_elapsed(self):
        state = WindowState(count=0, window_start=T0)
        assert hours_until_reset(state, T0 + DAY, DAY) == 0
        assert hours_until_reset(state, T0 + timedelta(days=3), DAY) == 0


class TestDecide:
    def test_admits_below_limit(self):
        state = WindowState(count=2, window_start=T0)
        decision = decide(state, T0 + timedelta(hours=2), DAY, 5, "DAILY_LIMIT_REACHED")
        assert decision.allowed is True
        assert decision.current == 2
        assert decision.remaining == 3
        assert decision.reason is None

    def test_denies_at_limit(self):
        state = WindowState(count=5, window_start=T0)
        decision = decide(state, T0 + timedelta(hours=1), DAY, 5, "DAILY_LIMIT_REACHED")
        assert decision.allowed is False
        assert decision.remaining == 0
        assert decision.hours_until_reset == 23
        assert decision.reason == "DAILY_LIMIT_REACHED"

    def test_unlimited_decision(self):
        decision = QuotaDecision.unlimited()
        assert decision.allowed is True
        assert decision.limit == UNLIMITED
        assert decision.as_usage()["remaining"] == UNLIMITED
