"""
Subscription ORM Models (``mealbox_modules.subscriptions.orm``).

SQLAlchemy persistence for subscription groups and per-slot subscriptions.
``schedule_days`` is stored as a JSON list of weekday ints (Monday=0).
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealbox_kernel.db.base import TrackedBase


class SubscriptionGroupModel(TrackedBase):
    """
    ORM model for a subscription group.

    Guarantees:
        - paused_at is non-NULL iff status = 'paused' (ck_subscription_groups_paused_at).
    """

    __tablename__ = "subscription_groups"

    __table_args__ = (
        CheckConstraint(
            "(status = 'paused' AND paused_at IS NOT NULL) "
            "OR (status <> 'paused' AND paused_at IS NULL)",
            name="ck_subscription_groups_paused_at",
        ),
        Index("idx_subscription_groups_renewal", "status", "period_type", "renewal_date"),
        Index("idx_subscription_groups_paused", "status", "paused_at"),
        Index("idx_subscription_groups_consumer", "consumer_id"),
    )

    consumer_id: Mapped[UUID] = mapped_column(nullable=False)
    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    period_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")
    mandate_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mandate_customer_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    mandate_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    mandate_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivery_address_id: Mapped[UUID | None] = mapped_column(nullable=True)
    last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    subscriptions: Mapped[list["SubscriptionModel"]] = relationship(
        "SubscriptionModel",
        back_populates="group",
        order_by="SubscriptionModel.slot",
    )

    def to_dto(self):
        from mealbox_modules.subscriptions.models import (
            MandateStatus,
            PaymentMethod,
            SubscriptionGroup,
            SubscriptionStatus,
        )

        return SubscriptionGroup(
            id=self.id,
            consumer_id=self.consumer_id,
            vendor_id=self.vendor_id,
            period_type=self.period_type,
            status=SubscriptionStatus(self.status),
            start_date=self.start_date,
            renewal_date=self.renewal_date,
            payment_method=PaymentMethod(self.payment_method),
            paused_at=self.paused_at,
            cancelled_at=self.cancelled_at,
            cancellation_reason=self.cancellation_reason,
            mandate_id=self.mandate_id,
            mandate_customer_id=self.mandate_customer_id,
            mandate_status=MandateStatus(self.mandate_status) if self.mandate_status else None,
            mandate_expires_at=self.mandate_expires_at,
            delivery_address_id=self.delivery_address_id,
        )


class SubscriptionModel(TrackedBase):
    """
    ORM model for a per-slot subscription.

    Guarantees:
        - 0 <= skips_used_current_cycle <= skip_limit (ck_subscriptions_skips).
    """

    __tablename__ = "subscriptions"

    __table_args__ = (
        CheckConstraint(
            "skips_used_current_cycle >= 0 AND skips_used_current_cycle <= skip_limit",
            name="ck_subscriptions_skips",
        ),
        Index("idx_subscriptions_group", "group_id"),
    )

    group_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscription_groups.id"), nullable=False
    )
    consumer_id: Mapped[UUID] = mapped_column(nullable=False)
    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    slot: Mapped[str] = mapped_column(String(20), nullable=False)
    schedule_days: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    renewal_date: Mapped[date] = mapped_column(Date, nullable=False)
    skip_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skips_used_current_cycle: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_cycle_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_cycle_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    delivery_address_id: Mapped[UUID | None] = mapped_column(nullable=True)
    last_renewed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    group: Mapped["SubscriptionGroupModel"] = relationship(
        "SubscriptionGroupModel",
        back_populates="subscriptions",
    )

    def to_dto(self):
        from mealbox_modules.subscriptions.models import Subscription, SubscriptionStatus

        return Subscription(
            id=self.id,
            group_id=self.group_id,
            consumer_id=self.consumer_id,
            vendor_id=self.vendor_id,
            slot=self.slot,
            schedule_days=tuple(self.schedule_days or ()),
            status=SubscriptionStatus(self.status),
            start_date=self.start_date,
            renewal_date=self.renewal_date,
            skip_limit=self.skip_limit,
            skips_used_current_cycle=self.skips_used_current_cycle,
            next_cycle_start=self.next_cycle_start,
            next_cycle_end=self.next_cycle_end,
            delivery_address_id=self.delivery_address_id,
        )
