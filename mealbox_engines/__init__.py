"""
Module: mealbox_engines
Responsibility:
    Re-exports the pure calculation engines: billing-cycle math and the
    payment-retry schedule.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import mealbox_kernel (exceptions, logging).
    MUST NOT import mealbox_modules, mealbox_services or mealbox_batch.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()`` or ``date.today()``.
    - Decimal-only arithmetic for money.
    - Determinism: identical inputs always produce identical outputs.
"""

from mealbox_engines.cycles import (
    Cycle,
    PeriodType,
    ProratedCycle,
    aligned_cycle,
    calculate_cycle_amount,
    count_scheduled_meals,
    cycle_for,
    dates_for_weekdays,
    is_renewal_date,
    next_renewal_date,
    prorate_first_cycle,
    round_money,
    validate_schedule_days,
    validate_start_date,
)
from mealbox_engines.retry_schedule import (
    PAUSE_AFTER_HOURS,
    RETRY_WINDOWS,
    RetryAction,
    RetryDecision,
    classify_retry_window,
    evaluate_retry,
    hours_since_renewal,
)

__all__ = [
    "Cycle",
    "PeriodType",
    "ProratedCycle",
    "aligned_cycle",
    "calculate_cycle_amount",
    "count_scheduled_meals",
    "cycle_for",
    "dates_for_weekdays",
    "is_renewal_date",
    "next_renewal_date",
    "prorate_first_cycle",
    "round_money",
    "validate_schedule_days",
    "validate_start_date",
    "PAUSE_AFTER_HOURS",
    "RETRY_WINDOWS",
    "RetryAction",
    "RetryDecision",
    "classify_retry_window",
    "evaluate_retry",
    "hours_since_renewal",
]
