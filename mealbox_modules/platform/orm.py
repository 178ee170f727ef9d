"""
Platform ORM Models (``mealbox_modules.platform.orm``).

SQLAlchemy persistence for platform settings, vendor slots and vendor
holidays.  Maps frozen dataclasses from ``models.py`` to database tables.
"""

from datetime import date, time
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, Date, Index, Integer, String, Time, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mealbox_kernel.db.base import TrackedBase


class PlatformSettingsModel(TrackedBase):
    """
    Single-row platform settings table.

    Guarantees:
        - At most one row is read (the oldest); services never insert a second.
    """

    __tablename__ = "platform_settings"

    max_pause_days: Mapped[int] = mapped_column(Integer, nullable=False, default=60)
    credit_expiry_days: Mapped[int] = mapped_column(Integer, nullable=False, default=90)
    skip_cutoff_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    auto_cancel_warning_days: Mapped[int] = mapped_column(Integer, nullable=False, default=7)

    def to_dto(self):
        from mealbox_modules.platform.models import PlatformSettings

        return PlatformSettings(
            max_pause_days=self.max_pause_days,
            credit_expiry_days=self.credit_expiry_days,
            skip_cutoff_hours=self.skip_cutoff_hours,
            auto_cancel_warning_days=self.auto_cancel_warning_days,
        )


class VendorSlotModel(TrackedBase):
    """
    ORM model for a vendor's meal slot.

    Guarantees:
        - One row per (vendor_id, slot) (uq_vendor_slots_vendor_slot).
    """

    __tablename__ = "vendor_slots"

    __table_args__ = (
        UniqueConstraint("vendor_id", "slot", name="uq_vendor_slots_vendor_slot"),
    )

    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    slot: Mapped[str] = mapped_column(String(20), nullable=False)
    delivery_window_start: Mapped[time] = mapped_column(Time, nullable=False)
    base_price_per_meal: Mapped[Decimal] = mapped_column(nullable=False)
    max_meals_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self):
        from mealbox_modules.platform.models import MealSlot, VendorSlot

        return VendorSlot(
            vendor_id=self.vendor_id,
            slot=MealSlot(self.slot),
            delivery_window_start=self.delivery_window_start,
            base_price_per_meal=self.base_price_per_meal,
            max_meals_per_day=self.max_meals_per_day,
            is_enabled=self.is_enabled,
        )


class VendorHolidayModel(TrackedBase):
    """ORM model for a vendor holiday (``slot`` NULL = whole day)."""

    __tablename__ = "vendor_holidays"

    __table_args__ = (
        Index("idx_vendor_holidays_vendor_date", "vendor_id", "holiday_date"),
    )

    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str | None] = mapped_column(String(20), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self):
        from mealbox_modules.platform.models import MealSlot, VendorHoliday

        return VendorHoliday(
            vendor_id=self.vendor_id,
            holiday_date=self.holiday_date,
            slot=MealSlot(self.slot) if self.slot else None,
            reason=self.reason,
        )
