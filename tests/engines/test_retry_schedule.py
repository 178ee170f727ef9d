"""
Tests for mealbox_engines.retry_schedule -- payment retry windows.

Windows are measured from midnight UTC of the invoice due date:
[6,24) -> 1, [24,48) -> 2, [48,72) -> 3, >= 72 -> pause.
"""

from datetime import date, datetime, timedelta, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from mealbox_engines.retry_schedule import (
    PAUSE_AFTER_HOURS,
    RETRY_WINDOWS,
    RetryAction,
    classify_retry_window,
    evaluate_retry,
    hours_since_renewal,
    renewal_instant,
)

DUE = date(2026, 1, 12)


def at(hours: float) -> datetime:
    return renewal_instant(DUE) + timedelta(hours=hours)


class TestWindows:

    @pytest.mark.parametrize("hours,window", [
        (0, None), (5.99, None), (6, 1), (23.9, 1), (24, 2), (47.5, 2),
        (48, 3), (71.99, 3), (72, None), (100, None),
    ])
    def test_classify(self, hours, window):
        assert classify_retry_window(hours) == window

    @given(hours=st.floats(min_value=6, max_value=71.999, allow_nan=False))
    def test_windows_partition_six_to_seventy_two(self, hours):
        containing = [
            i for i, (lo, hi) in enumerate(RETRY_WINDOWS, start=1) if lo <= hours < hi
        ]
        assert len(containing) == 1
        assert classify_retry_window(hours) == containing[0]

    def test_hours_since_renewal_needs_aware_now(self):
        with pytest.raises(ValueError):
            hours_since_renewal(DUE, datetime(2026, 1, 12, 8, 0))

    def test_hours_since_renewal(self):
        assert hours_since_renewal(DUE, datetime(2026, 1, 13, 6, 0, tzinfo=timezone.utc)) == 30


class TestEvaluateRetry:

    def test_waits_before_first_window(self):
        decision = evaluate_retry(due_date=DUE, now=at(3), retry_count=0, last_retry_at=None)
        assert decision.action is RetryAction.WAIT
        assert decision.window is None

    def test_retries_in_first_window(self):
        decision = evaluate_retry(due_date=DUE, now=at(7), retry_count=0, last_retry_at=None)
        assert decision.action is RetryAction.RETRY
        assert decision.window == 1

    def test_one_attempt_per_window(self):
        decision = evaluate_retry(due_date=DUE, now=at(20), retry_count=1, last_retry_at=at(7))
        assert decision.action is RetryAction.WAIT

    def test_next_window_allows_next_attempt(self):
        decision = evaluate_retry(due_date=DUE, now=at(25), retry_count=1, last_retry_at=at(7))
        assert decision.action is RetryAction.RETRY
        assert decision.window == 2

    def test_missed_window_catches_up_once(self):
        # No attempt in window 1; in window 3 the count is still behind
        decision = evaluate_retry(due_date=DUE, now=at(50), retry_count=0, last_retry_at=None)
        assert decision.action is RetryAction.RETRY
        assert decision.window == 3

    def test_minimum_spacing_of_one_hour(self):
        decision = evaluate_retry(
            due_date=DUE, now=at(24.5), retry_count=1, last_retry_at=at(23.9),
        )
        assert decision.action is RetryAction.WAIT

    def test_pause_at_seventy_two_hours(self):
        decision = evaluate_retry(
            due_date=DUE, now=at(PAUSE_AFTER_HOURS), retry_count=3, last_retry_at=at(50),
        )
        assert decision.action is RetryAction.PAUSE

    @given(
        hours=st.floats(min_value=0, max_value=200, allow_nan=False),
        retry_count=st.integers(min_value=0, max_value=5),
    )
    def test_never_more_attempts_than_windows(self, hours, retry_count):
        decision = evaluate_retry(
            due_date=DUE, now=at(hours), retry_count=retry_count, last_retry_at=None,
        )
        if decision.action is RetryAction.RETRY:
            assert retry_count < decision.window <= len(RETRY_WINDOWS)
        if hours >= PAUSE_AFTER_HOURS:
            assert decision.action is RetryAction.PAUSE
