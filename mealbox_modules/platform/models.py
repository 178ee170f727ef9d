"""
Platform Domain Models (``mealbox_modules.platform.models``).

Responsibility
--------------
Frozen value objects for platform-wide business settings and the vendor
side of a subscription: which meal slots a vendor offers, at what price,
with which delivery window and daily capacity, and on which holidays.

Invariants enforced
-------------------
* All models are ``frozen=True``.
* Prices are ``Decimal``.
* ``max_meals_per_day == 0`` means unlimited capacity.
"""

from dataclasses import dataclass
from datetime import date, time
from decimal import Decimal
from enum import Enum
from uuid import UUID


class MealSlot(str, Enum):
    """Meal slot a subscription is for."""
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


@dataclass(frozen=True)
class PlatformSettings:
    """Runtime-editable business rules."""
    max_pause_days: int = 60
    credit_expiry_days: int = 90
    skip_cutoff_hours: int = 3
    auto_cancel_warning_days: int = 7

    def __post_init__(self):
        if self.max_pause_days <= 0:
            raise ValueError("max_pause_days must be positive")
        if self.credit_expiry_days <= 0:
            raise ValueError("credit_expiry_days must be positive")
        if self.skip_cutoff_hours < 0:
            raise ValueError("skip_cutoff_hours cannot be negative")
        if not 0 < self.auto_cancel_warning_days < self.max_pause_days:
            raise ValueError("auto_cancel_warning_days must be between 1 and max_pause_days - 1")


@dataclass(frozen=True)
class VendorSlot:
    """A meal slot offered by a vendor."""
    vendor_id: UUID
    slot: MealSlot
    delivery_window_start: time
    base_price_per_meal: Decimal
    max_meals_per_day: int = 0  # 0 = unlimited
    is_enabled: bool = True

    @property
    def has_capacity_limit(self) -> bool:
        return self.max_meals_per_day > 0


@dataclass(frozen=True)
class VendorHoliday:
    """A day a vendor does not deliver; ``slot=None`` covers the whole day."""
    vendor_id: UUID
    holiday_date: date
    slot: MealSlot | None = None
    reason: str | None = None

    def covers(self, slot: MealSlot) -> bool:
        return self.slot is None or self.slot == slot
