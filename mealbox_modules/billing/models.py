"""
Billing Domain Models (``mealbox_modules.billing.models``).

Responsibility
--------------
Frozen value objects for cycle invoices, their per-slot line items, and
the outcome of a payment attempt.

Invariants enforced
-------------------
* ``billable_meals = scheduled_meals - credits_applied`` on every line.
* ``line_amount = billable_meals x price_per_meal``.
* Invoice totals are the sum of their lines; ``net = gross - discount``.
* One invoice per (group, period_start).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class RefundStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class PaymentMode(str, Enum):
    """How an invoice was put in front of the customer."""
    MANUAL = "manual"
    MANDATE = "mandate"
    ZERO_AMOUNT = "zero_amount"


@dataclass(frozen=True)
class InvoiceLineItem:
    id: UUID
    invoice_id: UUID
    subscription_id: UUID
    slot: str
    scheduled_meals: int
    credits_applied: int
    billable_meals: int
    price_per_meal: Decimal
    line_amount: Decimal

    def __post_init__(self):
        if self.billable_meals != self.scheduled_meals - self.credits_applied:
            raise ValueError("billable_meals must equal scheduled_meals - credits_applied")


@dataclass(frozen=True)
class Invoice:
    id: UUID
    group_id: UUID
    consumer_id: UUID
    vendor_id: UUID
    period_type: str
    period_start: date
    period_end: date
    due_date: date
    scheduled_meals: int
    credits_applied: int
    billable_meals: int
    gross_amount: Decimal
    discount_amount: Decimal
    net_amount: Decimal
    currency: str
    status: InvoiceStatus
    subscription_ids: tuple[UUID, ...] = ()
    retry_count: int = 0
    last_retry_at: datetime | None = None
    gateway_order_id: str | None = None
    payment_id: str | None = None
    paid_at: datetime | None = None
    refund_id: str | None = None
    refund_status: RefundStatus | None = None
    refund_amount: Decimal | None = None
    refunded_at: datetime | None = None
    orders_generated_at: datetime | None = None
    line_items: tuple[InvoiceLineItem, ...] = ()


@dataclass(frozen=True)
class LinePreview:
    """Priced line before persistence (``calculate_invoice_amount``)."""
    subscription_id: UUID
    slot: str
    scheduled_meals: int
    credits_available: int
    credits_applied: int
    billable_meals: int
    price_per_meal: Decimal
    line_amount: Decimal


@dataclass(frozen=True)
class InvoiceAmountPreview:
    period_start: date
    period_end: date
    scheduled_meals: int
    credits_applied: int
    billable_meals: int
    gross_amount: Decimal
    net_amount: Decimal
    lines: tuple[LinePreview, ...] = ()


@dataclass(frozen=True)
class PaymentAttempt:
    """Result of putting an invoice in front of the payment gateway."""
    invoice_id: UUID
    mode: PaymentMode
    gateway_order_id: str | None = None
    payment_id: str | None = None
    mandate_failed: bool = False
    error: str | None = None
    already_submitted: bool = False


@dataclass(frozen=True)
class WebhookOutcome:
    event: str
    handled: bool
    invoice_id: UUID | None = None
    detail: str = ""
