"""
Credit Ledger ORM Models (``mealbox_modules.credits.orm``).

Responsibility
--------------
SQLAlchemy persistence for slot-scoped credits, the credit-application
audit join rows, and account-level global credits.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``mealbox_kernel.db.base``
and sibling ``models.py``.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from mealbox_kernel.db.base import TrackedBase


class CreditModel(TrackedBase):
    """
    ORM model for a slot-scoped meal credit.

    Guarantees:
        - 0 <= consumed_quantity <= quantity (ck_credits_consumed_range).
        - One credit per (subscription, slot, reason, source_date) when
          source_date is set (uq_credits_source); NULL source dates never
          collide.
        - Rows are never deleted; expiry and conversion are status changes.
    """

    __tablename__ = "credits"

    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "slot", "reason", "source_date",
            name="uq_credits_source",
        ),
        CheckConstraint("quantity > 0", name="ck_credits_quantity_positive"),
        CheckConstraint(
            "consumed_quantity >= 0 AND consumed_quantity <= quantity",
            name="ck_credits_consumed_range",
        ),
        Index("idx_credits_subscription_slot", "subscription_id", "slot", "status"),
        Index("idx_credits_status_expires", "status", "expires_at"),
    )

    subscription_id: Mapped[UUID] = mapped_column(
        ForeignKey("subscriptions.id"), nullable=False
    )
    slot: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    consumed_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    source_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def available(self) -> int:
        return self.quantity - self.consumed_quantity

    def to_dto(self):
        from mealbox_modules.credits.models import Credit, CreditReason, CreditStatus

        return Credit(
            id=self.id,
            subscription_id=self.subscription_id,
            slot=self.slot,
            reason=CreditReason(self.reason),
            quantity=self.quantity,
            consumed_quantity=self.consumed_quantity,
            status=CreditStatus(self.status),
            expires_at=self.expires_at,
            created_at=self.created_at,
            source_date=self.source_date,
            notes=self.notes,
        )


class CreditApplicationModel(TrackedBase):
    """
    Audit join row: one FIFO consumption of a credit against an invoice line.

    Guarantees:
        - quantity_applied > 0.
        - Append-only.
    """

    __tablename__ = "credit_applications"

    __table_args__ = (
        CheckConstraint("quantity_applied > 0", name="ck_credit_applications_positive"),
        Index("idx_credit_applications_invoice", "invoice_id"),
        Index("idx_credit_applications_credit", "credit_id"),
    )

    credit_id: Mapped[UUID] = mapped_column(ForeignKey("credits.id"), nullable=False)
    invoice_id: Mapped[UUID] = mapped_column(ForeignKey("invoices.id"), nullable=False)
    line_item_id: Mapped[UUID] = mapped_column(
        ForeignKey("invoice_line_items.id"), nullable=False
    )
    quantity_applied: Mapped[int] = mapped_column(Integer, nullable=False)

    def to_dto(self):
        from mealbox_modules.credits.models import CreditApplication

        return CreditApplication(
            credit_id=self.credit_id,
            invoice_id=self.invoice_id,
            line_item_id=self.line_item_id,
            quantity_applied=self.quantity_applied,
        )


class GlobalCreditModel(TrackedBase):
    """ORM model for an account-level credit (not slot-scoped)."""

    __tablename__ = "global_credits"

    __table_args__ = (
        Index("idx_global_credits_consumer", "consumer_id", "status"),
        Index("idx_global_credits_source_group", "source_group_id"),
    )

    consumer_id: Mapped[UUID] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    consumed_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="available")
    source_type: Mapped[str] = mapped_column(String(30), nullable=False)
    source_group_id: Mapped[UUID | None] = mapped_column(nullable=True)
    source_invoice_id: Mapped[UUID | None] = mapped_column(nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self):
        from mealbox_modules.credits.models import (
            GlobalCredit,
            GlobalCreditSource,
            GlobalCreditStatus,
        )

        return GlobalCredit(
            id=self.id,
            consumer_id=self.consumer_id,
            amount=self.amount,
            consumed_amount=self.consumed_amount,
            status=GlobalCreditStatus(self.status),
            source_type=GlobalCreditSource(self.source_type),
            source_group_id=self.source_group_id,
            source_invoice_id=self.source_invoice_id,
            expires_at=self.expires_at,
            notes=self.notes,
        )
