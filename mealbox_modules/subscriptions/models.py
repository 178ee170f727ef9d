"""
Subscription Domain Models (``mealbox_modules.subscriptions.models``).

Responsibility
--------------
Frozen value objects for subscription groups (one consumer-vendor billing
relationship) and their per-slot subscriptions, plus the status state
machine shared by both.

Invariants enforced
-------------------
* ``paused_at`` is set iff ``status == paused``.
* ``skips_used_current_cycle <= skip_limit``.
* Status transitions follow ``ALLOWED_TRANSITIONS``; ``cancelled`` is
  terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from mealbox_kernel.exceptions import InvalidStatusTransitionError


class SubscriptionStatus(str, Enum):
    """Status of a subscription group or a per-slot subscription."""
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    MANUAL = "manual"
    MANDATE = "mandate"


class MandateStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RefundPreference(str, Enum):
    """What to do with the unused value of a cancelled group."""
    REFUND = "refund"
    CREDIT = "credit"


ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.PAUSED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED}),
    SubscriptionStatus.CANCELLED: frozenset(),
}


def validate_transition(
    entity: str,
    entity_id: UUID | str,
    from_status: SubscriptionStatus | str,
    to_status: SubscriptionStatus | str,
) -> None:
    """Raise InvalidStatusTransitionError unless the move is allowed."""
    source = SubscriptionStatus(from_status)
    target = SubscriptionStatus(to_status)
    if target not in ALLOWED_TRANSITIONS[source]:
        raise InvalidStatusTransitionError(entity, str(entity_id), source.value, target.value)


@dataclass(frozen=True)
class SubscriptionGroup:
    """One consumer-vendor billing relationship."""
    id: UUID
    consumer_id: UUID
    vendor_id: UUID
    period_type: str
    status: SubscriptionStatus
    start_date: date
    renewal_date: date
    payment_method: PaymentMethod = PaymentMethod.MANUAL
    paused_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    mandate_id: str | None = None
    mandate_customer_id: str | None = None
    mandate_status: MandateStatus | None = None
    mandate_expires_at: datetime | None = None
    delivery_address_id: UUID | None = None

    def __post_init__(self):
        if (self.paused_at is not None) != (self.status == SubscriptionStatus.PAUSED):
            raise ValueError("paused_at must be set iff status is paused")

    def has_usable_mandate(self, now: datetime) -> bool:
        return (
            self.payment_method == PaymentMethod.MANDATE
            and self.mandate_id is not None
            and self.mandate_status == MandateStatus.ACTIVE
            and (self.mandate_expires_at is None or self.mandate_expires_at > now)
        )


@dataclass(frozen=True)
class Subscription:
    """A per-slot subscription inside a group."""
    id: UUID
    group_id: UUID
    consumer_id: UUID
    vendor_id: UUID
    slot: str
    schedule_days: tuple[int, ...]
    status: SubscriptionStatus
    start_date: date
    renewal_date: date
    skip_limit: int
    skips_used_current_cycle: int = 0
    next_cycle_start: date | None = None
    next_cycle_end: date | None = None
    delivery_address_id: UUID | None = None

    def __post_init__(self):
        if not 0 <= self.skips_used_current_cycle <= self.skip_limit:
            raise ValueError(
                f"skips_used_current_cycle {self.skips_used_current_cycle} "
                f"outside [0, {self.skip_limit}]"
            )

    @property
    def skips_remaining(self) -> int:
        return self.skip_limit - self.skips_used_current_cycle


@dataclass(frozen=True)
class SlotSelection:
    """Checkout input for one slot of a new group."""
    slot: str
    schedule_days: tuple[int, ...]
    skip_limit: int | None = None


@dataclass(frozen=True)
class CheckoutResult:
    group: SubscriptionGroup
    subscriptions: tuple[Subscription, ...]
    invoice_id: UUID
    first_cycle_meals: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class SkipLimitStatus:
    within_limit: bool
    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass(frozen=True)
class SkipResult:
    subscription_id: UUID
    service_date: date
    order_id: UUID
    credit_created: bool
    credit_id: UUID | None
    skips_used: int
    skip_limit: int


@dataclass(frozen=True)
class CancelResult:
    group_id: UUID
    credits_converted: int
    global_credit_id: UUID | None
    global_credit_amount: Decimal
    refund_requested: bool
    orders_cancelled: int = 0


@dataclass(frozen=True)
class ResumeResult:
    group: SubscriptionGroup
    invoice_id: UUID | None
    renewal_date: date
