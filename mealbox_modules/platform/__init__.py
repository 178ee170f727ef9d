"""
Platform Module.

Platform-wide business settings plus the vendor side of a subscription:
slot offerings (price, delivery window, capacity) and holidays.
"""

from mealbox_modules.platform.models import (
    MealSlot,
    PlatformSettings,
    VendorHoliday,
    VendorSlot,
)

__all__ = [
    "MealSlot",
    "PlatformSettings",
    "VendorHoliday",
    "VendorSlot",
]
