"""
Platform Service - settings and vendor slot/holiday lookups.

Thin persistence layer over ``platform_settings``, ``vendor_slots`` and
``vendor_holidays``.  Every other module reads business rules and slot
prices through here.

The service flushes but never commits; the caller owns the transaction.

Usage:
    platform = PlatformService(session, clock)
    settings = platform.get_settings()
    slot = platform.get_vendor_slot(vendor_id, MealSlot.LUNCH)
"""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import (
    PlatformSettingsNotFoundError,
    VendorSlotNotFoundError,
)
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.platform.models import MealSlot, PlatformSettings, VendorSlot
from mealbox_modules.platform.orm import (
    PlatformSettingsModel,
    VendorHolidayModel,
    VendorSlotModel,
)

logger = get_logger("modules.platform.service")


class PlatformService:
    """Reads and maintains platform settings and vendor slot data."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # =========================================================================
    # Settings
    # =========================================================================

    def _settings_row(self) -> PlatformSettingsModel | None:
        return self._session.execute(
            select(PlatformSettingsModel)
            .order_by(PlatformSettingsModel.created_at, PlatformSettingsModel.id)
            .limit(1)
        ).scalar_one_or_none()

    def get_settings(self) -> PlatformSettings:
        """Current settings, or the built-in defaults when no row exists."""
        row = self._settings_row()
        if row is None:
            return PlatformSettings()
        return row.to_dto()

    def require_settings(self) -> PlatformSettings:
        """Current settings; raises when the settings row is missing."""
        row = self._settings_row()
        if row is None:
            raise PlatformSettingsNotFoundError()
        return row.to_dto()

    def upsert_settings(
        self,
        settings: PlatformSettings,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> PlatformSettings:
        row = self._settings_row()
        if row is None:
            row = PlatformSettingsModel(
                created_at=self._clock.now(),
                created_by_id=actor_id,
            )
            self._session.add(row)
        else:
            row.updated_by_id = actor_id
        row.max_pause_days = settings.max_pause_days
        row.credit_expiry_days = settings.credit_expiry_days
        row.skip_cutoff_hours = settings.skip_cutoff_hours
        row.auto_cancel_warning_days = settings.auto_cancel_warning_days
        self._session.flush()

        logger.info("platform_settings_updated", extra={
            "max_pause_days": settings.max_pause_days,
            "credit_expiry_days": settings.credit_expiry_days,
            "skip_cutoff_hours": settings.skip_cutoff_hours,
            "auto_cancel_warning_days": settings.auto_cancel_warning_days,
        })
        return row.to_dto()

    # =========================================================================
    # Vendor slots
    # =========================================================================

    def _slot_row(self, vendor_id: UUID, slot: MealSlot | str) -> VendorSlotModel | None:
        return self._session.execute(
            select(VendorSlotModel).where(
                VendorSlotModel.vendor_id == vendor_id,
                VendorSlotModel.slot == MealSlot(slot).value,
            )
        ).scalar_one_or_none()

    def get_vendor_slot(self, vendor_id: UUID, slot: MealSlot | str) -> VendorSlot:
        row = self._slot_row(vendor_id, slot)
        if row is None:
            raise VendorSlotNotFoundError(str(vendor_id), MealSlot(slot).value)
        return row.to_dto()

    def upsert_vendor_slot(
        self,
        vendor_id: UUID,
        slot: MealSlot | str,
        delivery_window_start: time,
        base_price_per_meal: Decimal,
        max_meals_per_day: int = 0,
        is_enabled: bool = True,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> VendorSlot:
        """Create or update the vendor's offering for a slot."""
        slot = MealSlot(slot)
        if max_meals_per_day < 0:
            raise ValueError("max_meals_per_day cannot be negative")
        row = self._slot_row(vendor_id, slot)
        if row is None:
            row = VendorSlotModel(
                vendor_id=vendor_id,
                slot=slot.value,
                created_at=self._clock.now(),
                created_by_id=actor_id,
            )
            self._session.add(row)
        else:
            row.updated_by_id = actor_id
        row.delivery_window_start = delivery_window_start
        row.base_price_per_meal = Decimal(base_price_per_meal)
        row.max_meals_per_day = max_meals_per_day
        row.is_enabled = is_enabled
        self._session.flush()
        return row.to_dto()

    # =========================================================================
    # Vendor holidays
    # =========================================================================

    def add_vendor_holiday(
        self,
        vendor_id: UUID,
        holiday_date: date,
        slot: MealSlot | str | None = None,
        reason: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> None:
        self._session.add(VendorHolidayModel(
            vendor_id=vendor_id,
            holiday_date=holiday_date,
            slot=MealSlot(slot).value if slot else None,
            reason=reason,
            created_at=self._clock.now(),
            created_by_id=actor_id,
        ))
        self._session.flush()

        logger.info("vendor_holiday_added", extra={
            "vendor_id": str(vendor_id),
            "holiday_date": holiday_date.isoformat(),
            "slot": MealSlot(slot).value if slot else None,
        })

    def holidays_between(
        self,
        vendor_id: UUID,
        slot: MealSlot | str,
        start: date,
        end: date,
    ) -> set[date]:
        """Dates in [start, end] on which the vendor does not serve ``slot``."""
        slot = MealSlot(slot)
        rows = self._session.execute(
            select(VendorHolidayModel.holiday_date).where(
                VendorHolidayModel.vendor_id == vendor_id,
                VendorHolidayModel.holiday_date >= start,
                VendorHolidayModel.holiday_date <= end,
                or_(
                    VendorHolidayModel.slot.is_(None),
                    VendorHolidayModel.slot == slot.value,
                ),
            )
        ).scalars().all()
        return set(rows)

    def is_holiday(self, vendor_id: UUID, slot: MealSlot | str, day: date) -> bool:
        return day in self.holidays_between(vendor_id, slot, day, day)
