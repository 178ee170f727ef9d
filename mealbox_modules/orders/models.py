"""
Order Domain Models (``mealbox_modules.orders.models``).

One Order is one meal for one subscription slot on one service date.
Orders are generated from paid invoices; skips and holidays leave a row
in a non-scheduled status or a credit in its place.
"""

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from uuid import UUID


class OrderStatus(str, Enum):
    SCHEDULED = "scheduled"
    DELIVERED = "delivered"
    SKIPPED_CUSTOMER = "skipped_customer"
    SKIPPED_VENDOR = "skipped_vendor"
    CANCELLED = "cancelled"
    FAILED_OPS = "failed_ops"


@dataclass(frozen=True)
class Order:
    id: UUID
    subscription_id: UUID
    group_id: UUID
    consumer_id: UUID
    vendor_id: UUID
    service_date: date
    slot: str
    status: OrderStatus
    reason: str | None = None
    delivery_address_id: UUID | None = None


@dataclass(frozen=True)
class OrderGenerationOutcome:
    """What generating orders for one invoice did."""
    invoice_id: UUID
    orders_created: int = 0
    holiday_credits: int = 0
    capacity_credits: int = 0
    already_generated: bool = False
    order_dates: tuple[date, ...] = field(default_factory=tuple)
