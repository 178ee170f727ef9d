"""
Module: mealbox_engines.retry_schedule
Responsibility:
    Classify an unpaid renewal invoice into its payment-retry window and
    decide what the Payment-Retry job should do with it right now.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  ``now`` is a parameter.

Invariants enforced:
    - Windows [6,24), [24,48), [48,72) hours are mutually exclusive and
      cover [6,72) exactly.
    - At most one retry attempt per window, at most one per hour, and never
      more attempts than windows.
    - At >= 72 hours the decision is PAUSE (terminal for the invoice).

Failure modes:
    - ValueError if ``now`` is naive.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum

from mealbox_engines.tracer import traced_engine

RETRY_WINDOWS: tuple[tuple[int, int], ...] = ((6, 24), (24, 48), (48, 72))
PAUSE_AFTER_HOURS = 72
MIN_RETRY_SPACING = timedelta(hours=1)


class RetryAction(str, Enum):
    """What the Payment-Retry job should do with an invoice."""

    WAIT = "wait"
    RETRY = "retry"
    PAUSE = "pause"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    hours_since_renewal: float
    window: int | None = None  # 1-based window index
    reason: str = ""


def renewal_instant(due_date: date) -> datetime:
    """Midnight UTC of the renewal (due) date."""
    return datetime.combine(due_date, time.min, tzinfo=timezone.utc)


def hours_since_renewal(due_date: date, now: datetime) -> float:
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    return (now - renewal_instant(due_date)).total_seconds() / 3600


def classify_retry_window(hours: float) -> int | None:
    """1-based retry window containing ``hours``, or None outside [6, 72)."""
    for index, (lower, upper) in enumerate(RETRY_WINDOWS, start=1):
        if lower <= hours < upper:
            return index
    return None


@traced_engine("retry_schedule.evaluate", "1.0", ("due_date", "now", "retry_count", "last_retry_at"))
def evaluate_retry(
    *,
    due_date: date,
    now: datetime,
    retry_count: int,
    last_retry_at: datetime | None,
) -> RetryDecision:
    """Decide WAIT / RETRY / PAUSE for a pending invoice."""
    hours = hours_since_renewal(due_date, now)

    if hours >= PAUSE_AFTER_HOURS:
        return RetryDecision(RetryAction.PAUSE, hours, reason="retry deadline reached")

    window = classify_retry_window(hours)
    if window is None:
        return RetryDecision(RetryAction.WAIT, hours, reason="before first retry window")

    if retry_count >= window:
        return RetryDecision(RetryAction.WAIT, hours, window, "window already attempted")

    if last_retry_at is not None:
        if now - last_retry_at < MIN_RETRY_SPACING:
            return RetryDecision(RetryAction.WAIT, hours, window, "retried less than 1h ago")
        last_window = classify_retry_window(hours_since_renewal(due_date, last_retry_at))
        if last_window == window:
            return RetryDecision(RetryAction.WAIT, hours, window, "window already attempted")

    return RetryDecision(RetryAction.RETRY, hours, window, f"retry window {window}")
