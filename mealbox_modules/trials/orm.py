"""
Trial ORM Models (``mealbox_modules.trials.orm``).
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from mealbox_kernel.db.base import TrackedBase


class TrialModel(TrackedBase):
    """ORM model for a vendor trial."""

    __tablename__ = "trials"

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_trials_dates"),
        Index("idx_trials_status_end", "status", "end_date"),
    )

    consumer_id: Mapped[UUID] = mapped_column(nullable=False)
    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self):
        from mealbox_modules.trials.models import Trial, TrialStatus

        return Trial(
            id=self.id,
            consumer_id=self.consumer_id,
            vendor_id=self.vendor_id,
            status=TrialStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
        )
