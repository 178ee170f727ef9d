"""
Module: mealbox_engines.cycles
Responsibility:
    Billing-cycle date math: renewal dates, cycle boundaries, weekday
    expansion of a slot schedule, meal counting and first-cycle proration.

Architecture position:
    Engines -- pure calculation layer, zero I/O.  Callers pass ``today``
    explicitly; nothing here reads a clock.

Invariants enforced:
    - Weekly renewal dates are always Mondays; monthly renewal dates are
      always the 1st.
    - ``cycle_end == renewal_date - 1 day`` for every Cycle (checked on
      construction).
    - Weekdays use ``date.weekday()`` numbering: Monday=0 ... Sunday=6.
    - Amounts are Decimal, rounded half-up to 2 places.

Failure modes:
    - InvalidScheduleError for empty schedules or out-of-range weekdays.
    - InvalidStartDateError when a start date is in the past or leaves no
      scheduled meal before the first renewal.
    - ValueError for a Cycle whose end does not precede its renewal.

Usage:
    from mealbox_engines.cycles import PeriodType, prorate_first_cycle

    first = prorate_first_cycle(
        start_date=date(2026, 1, 7),              # Wednesday
        period_type=PeriodType.WEEKLY,
        schedule_days=(0, 2, 4),                   # Mon, Wed, Fri
    )
    first.scheduled_meals                          # 2 (Wed, Fri)
    first.cycle.renewal_date                       # date(2026, 1, 12)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Sequence

from mealbox_kernel.exceptions import InvalidScheduleError, InvalidStartDateError
from mealbox_engines.tracer import traced_engine

_CENTS = Decimal("0.01")


class PeriodType(str, Enum):
    """Billing period of a subscription group."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"


@dataclass(frozen=True)
class Cycle:
    """One billing cycle: [cycle_start, cycle_end], renewing on renewal_date."""

    cycle_start: date
    cycle_end: date
    renewal_date: date

    def __post_init__(self):
        if self.cycle_end != self.renewal_date - timedelta(days=1):
            raise ValueError(
                f"cycle_end {self.cycle_end} must be the day before "
                f"renewal_date {self.renewal_date}"
            )
        if self.cycle_start > self.cycle_end:
            raise ValueError(
                f"cycle_start {self.cycle_start} is after cycle_end {self.cycle_end}"
            )

    def contains(self, day: date) -> bool:
        return self.cycle_start <= day <= self.cycle_end

    @property
    def days(self) -> int:
        return (self.cycle_end - self.cycle_start).days + 1


@dataclass(frozen=True)
class ProratedCycle:
    """First cycle of a subscription, possibly shorter than a full period."""

    cycle: Cycle
    period_type: PeriodType
    scheduled_meals: int
    full_cycle_meals: int

    @property
    def is_prorated(self) -> bool:
        return not is_renewal_date(self.cycle.cycle_start, self.period_type)


# =============================================================================
# Renewal dates and boundaries
# =============================================================================


def next_renewal_date(from_date: date, period_type: PeriodType | str) -> date:
    """First renewal strictly after ``from_date``.

    Weekly: the next Monday (a Monday gives the following Monday).
    Monthly: the 1st of the next month.
    """
    period_type = PeriodType(period_type)
    if period_type is PeriodType.WEEKLY:
        return from_date + timedelta(days=7 - from_date.weekday())
    if from_date.month == 12:
        return date(from_date.year + 1, 1, 1)
    return date(from_date.year, from_date.month + 1, 1)


def cycle_for(start: date, period_type: PeriodType | str) -> Cycle:
    """Cycle running from ``start`` up to the next renewal date."""
    renewal = next_renewal_date(start, period_type)
    return Cycle(
        cycle_start=start,
        cycle_end=renewal - timedelta(days=1),
        renewal_date=renewal,
    )


def aligned_cycle(day: date, period_type: PeriodType | str) -> Cycle:
    """Full calendar cycle (Mon-Sun week or calendar month) containing ``day``."""
    period_type = PeriodType(period_type)
    if period_type is PeriodType.WEEKLY:
        start = day - timedelta(days=day.weekday())
    else:
        start = day.replace(day=1)
    return cycle_for(start, period_type)


def is_renewal_date(day: date, period_type: PeriodType | str) -> bool:
    """True if ``day`` is a valid renewal boundary for the period type."""
    if PeriodType(period_type) is PeriodType.WEEKLY:
        return day.weekday() == 0
    return day.day == 1


# =============================================================================
# Schedule expansion
# =============================================================================


def validate_schedule_days(schedule_days: Iterable[int]) -> tuple[int, ...]:
    """Normalize a slot schedule to a sorted tuple of unique weekday ints."""
    given = list(schedule_days)
    if not given:
        raise InvalidScheduleError([], "at least one weekday is required")
    bad = [
        d for d in given
        if isinstance(d, bool) or not isinstance(d, int) or d < 0 or d > 6
    ]
    if bad:
        raise InvalidScheduleError(given, f"weekdays must be integers 0-6: {bad!r}")
    return tuple(sorted(set(given)))


def dates_for_weekdays(
    start: date, end: date, schedule_days: Iterable[int],
) -> list[date]:
    """All dates in [start, end] whose weekday is in ``schedule_days``."""
    wanted = frozenset(schedule_days)
    if start > end or not wanted:
        return []
    result: list[date] = []
    current = start
    while current <= end:
        if current.weekday() in wanted:
            result.append(current)
        current += timedelta(days=1)
    return result


def count_scheduled_meals(
    start: date,
    end: date,
    schedule_days: Iterable[int],
    holidays: Iterable[date] = (),
) -> int:
    """Number of scheduled dates in [start, end], excluding ``holidays``."""
    excluded = frozenset(holidays)
    return sum(
        1 for d in dates_for_weekdays(start, end, schedule_days) if d not in excluded
    )


# =============================================================================
# Proration and pricing
# =============================================================================


@traced_engine("cycles.prorate", "1.0", ("start_date", "period_type", "schedule_days"))
def prorate_first_cycle(
    *,
    start_date: date,
    period_type: PeriodType | str,
    schedule_days: Sequence[int],
) -> ProratedCycle:
    """First cycle from ``start_date`` to the day before the first renewal.

    The first cycle only bills the scheduled meals between the start date
    and the first renewal boundary; every later cycle is a full period.
    """
    days = validate_schedule_days(schedule_days)
    cycle = cycle_for(start_date, period_type)
    full = aligned_cycle(start_date, period_type)
    return ProratedCycle(
        cycle=cycle,
        period_type=PeriodType(period_type),
        scheduled_meals=count_scheduled_meals(cycle.cycle_start, cycle.cycle_end, days),
        full_cycle_meals=count_scheduled_meals(full.cycle_start, full.cycle_end, days),
    )


def validate_start_date(
    start_date: date,
    period_type: PeriodType | str,
    schedule_days: Sequence[int],
    today: date,
) -> int:
    """Check a start date and return the first-cycle meal count.

    Raises:
        InvalidStartDateError: start in the past, or no meal before renewal.
    """
    if start_date < today:
        raise InvalidStartDateError(start_date, "start date is in the past")
    days = validate_schedule_days(schedule_days)
    cycle = cycle_for(start_date, period_type)
    meals = count_scheduled_meals(cycle.cycle_start, cycle.cycle_end, days)
    if meals < 1:
        raise InvalidStartDateError(
            start_date,
            f"no scheduled meal before renewal on {cycle.renewal_date.isoformat()}",
        )
    return meals


def calculate_cycle_amount(meals: int, price_per_meal: Decimal) -> Decimal:
    """``meals x price_per_meal`` rounded half-up to 2 places."""
    if meals < 0:
        raise ValueError(f"meals must be non-negative, got {meals}")
    return (Decimal(meals) * Decimal(price_per_meal)).quantize(_CENTS, rounding=ROUND_HALF_UP)


def round_money(amount: Decimal) -> Decimal:
    """Round a monetary amount half-up to 2 places."""
    return Decimal(amount).quantize(_CENTS, rounding=ROUND_HALF_UP)
