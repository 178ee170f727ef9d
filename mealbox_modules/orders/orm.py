"""
Order ORM Models (``mealbox_modules.orders.orm``).
"""

from datetime import date
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from mealbox_kernel.db.base import TrackedBase


class OrderModel(TrackedBase):
    """
    ORM model for a single meal order.

    Guarantees:
        - One order per (subscription_id, service_date, slot)
          (uq_orders_subscription_date_slot).
    """

    __tablename__ = "orders"

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "service_date", "slot",
            name="uq_orders_subscription_date_slot",
        ),
        Index("idx_orders_group_date", "group_id", "service_date"),
        Index("idx_orders_vendor_date_slot", "vendor_id", "service_date", "slot", "status"),
    )

    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False
    )
    group_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscription_groups.id"), nullable=False
    )
    consumer_id: Mapped[UUID] = mapped_column(nullable=False)
    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    service_date: Mapped[date] = mapped_column(Date, nullable=False)
    slot: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="scheduled")
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_address_id: Mapped[UUID | None] = mapped_column(nullable=True)

    def to_dto(self):
        from mealbox_modules.orders.models import Order, OrderStatus

        return Order(
            id=self.id,
            subscription_id=self.subscription_id,
            group_id=self.group_id,
            consumer_id=self.consumer_id,
            vendor_id=self.vendor_id,
            service_date=self.service_date,
            slot=self.slot,
            status=OrderStatus(self.status),
            reason=self.reason,
            delivery_address_id=self.delivery_address_id,
        )
