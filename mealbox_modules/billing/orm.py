"""
Billing ORM Models (``mealbox_modules.billing.orm``).

Responsibility
--------------
SQLAlchemy persistence for invoices and invoice line items.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``mealbox_kernel.db.base``,
plus ``mealbox_engines.cycles`` for line and total rounding.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mealbox_engines.cycles import calculate_cycle_amount, round_money
from mealbox_kernel.db.base import TrackedBase


class InvoiceModel(TrackedBase):
    """
    ORM model for one billing cycle of a subscription group.

    Guarantees:
        - One invoice per (group_id, period_start) (uq_invoices_group_period).
        - net_amount >= 0.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("group_id", "period_start", name="uq_invoices_group_period"),
        CheckConstraint("net_amount >= 0", name="ck_invoices_net_non_negative"),
        Index("idx_invoices_status_due", "status", "due_date"),
        Index("idx_invoices_orders_generated", "status", "orders_generated_at"),
        Index("idx_invoices_gateway_order", "gateway_order_id"),
        Index("idx_invoices_refund", "refund_id"),
    )

    group_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscription_groups.id"), nullable=False
    )
    consumer_id: Mapped[UUID] = mapped_column(nullable=False)
    vendor_id: Mapped[UUID] = mapped_column(nullable=False)
    period_type: Mapped[str] = mapped_column(String(20), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    subscription_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    scheduled_meals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credits_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billable_meals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    gross_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    net_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(nullable=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    refund_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    orders_generated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    line_items: Mapped[list["InvoiceLineItemModel"]] = relationship(
        "InvoiceLineItemModel",
        back_populates="invoice",
        order_by="InvoiceLineItemModel.slot",
        cascade="all, delete-orphan",
    )

    def recalculate_totals(self) -> None:
        """Roll line totals up into the invoice (net never below zero)."""
        for line in self.line_items:
            line.recalculate()
        self.scheduled_meals = sum(line.scheduled_meals for line in self.line_items)
        self.credits_applied = sum(line.credits_applied for line in self.line_items)
        self.billable_meals = sum(line.billable_meals for line in self.line_items)
        self.gross_amount = round_money(
            sum((line.line_amount for line in self.line_items), Decimal("0"))
        )
        discount = self.discount_amount or Decimal("0")
        self.net_amount = max(round_money(self.gross_amount - discount), Decimal("0.00"))

    def to_dto(self):
        from mealbox_modules.billing.models import Invoice, InvoiceStatus, RefundStatus

        return Invoice(
            id=self.id,
            group_id=self.group_id,
            consumer_id=self.consumer_id,
            vendor_id=self.vendor_id,
            period_type=self.period_type,
            period_start=self.period_start,
            period_end=self.period_end,
            due_date=self.due_date,
            subscription_ids=tuple(UUID(s) for s in self.subscription_ids or ()),
            scheduled_meals=self.scheduled_meals,
            credits_applied=self.credits_applied,
            billable_meals=self.billable_meals,
            gross_amount=self.gross_amount,
            discount_amount=self.discount_amount,
            net_amount=self.net_amount,
            currency=self.currency,
            status=InvoiceStatus(self.status),
            retry_count=self.retry_count,
            last_retry_at=self.last_retry_at,
            gateway_order_id=self.gateway_order_id,
            payment_id=self.payment_id,
            paid_at=self.paid_at,
            refund_id=self.refund_id,
            refund_status=RefundStatus(self.refund_status) if self.refund_status else None,
            refund_amount=self.refund_amount,
            refunded_at=self.refunded_at,
            orders_generated_at=self.orders_generated_at,
            line_items=tuple(line.to_dto() for line in self.line_items),
        )


class InvoiceLineItemModel(TrackedBase):
    """ORM model for the per-slot line of an invoice."""

    __tablename__ = "invoice_line_items"

    __table_args__ = (
        UniqueConstraint(
            "invoice_id", "subscription_id", name="uq_invoice_line_items_subscription",
        ),
        CheckConstraint(
            "credits_applied >= 0 AND credits_applied <= scheduled_meals",
            name="ck_invoice_line_items_credits",
        ),
    )

    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False
    )
    slot: Mapped[str] = mapped_column(String(20), nullable=False)
    scheduled_meals: Mapped[int] = mapped_column(Integer, nullable=False)
    credits_applied: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billable_meals: Mapped[int] = mapped_column(Integer, nullable=False)
    price_per_meal: Mapped[Decimal] = mapped_column(nullable=False)
    line_amount: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped["InvoiceModel"] = relationship(
        "InvoiceModel",
        back_populates="line_items",
    )

    def recalculate(self) -> None:
        self.billable_meals = self.scheduled_meals - self.credits_applied
        self.line_amount = calculate_cycle_amount(self.billable_meals, self.price_per_meal)

    def to_dto(self):
        from mealbox_modules.billing.models import InvoiceLineItem

        return InvoiceLineItem(
            id=self.id,
            invoice_id=self.invoice_id,
            subscription_id=self.subscription_id,
            slot=self.slot,
            scheduled_meals=self.scheduled_meals,
            credits_applied=self.credits_applied,
            billable_meals=self.billable_meals,
            price_per_meal=self.price_per_meal,
            line_amount=self.line_amount,
        )
