"""
Credit Ledger Domain Models (``mealbox_modules.credits.models``).

Responsibility
--------------
Frozen value objects for slot-scoped meal credits, their FIFO
applications to invoices, and account-level global credits.

Invariants enforced
-------------------
* ``0 <= consumed_quantity <= quantity`` for every Credit.
* ``available = quantity - consumed_quantity``.
* A credit is usable only while status is ``available``, ``expires_at``
  is in the future and ``available > 0``.
* GlobalCredit amounts are ``Decimal``; ``0 <= consumed_amount <= amount``.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class CreditReason(str, Enum):
    """Why a meal credit was granted."""
    CUSTOMER_SKIP = "customer_skip"
    VENDOR_HOLIDAY = "vendor_holiday"
    OPS_FAILURE = "ops_failure"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class CreditStatus(str, Enum):
    AVAILABLE = "available"
    EXPIRED = "expired"
    CONVERTED = "converted"


class GlobalCreditStatus(str, Enum):
    AVAILABLE = "available"
    PENDING_REFUND = "pending_refund"
    CONSUMED = "consumed"


class GlobalCreditSource(str, Enum):
    """Where an account-level credit came from."""
    PAUSE_AUTO_CANCEL = "pause_auto_cancel"
    CANCEL_CREDIT = "cancel_credit"
    CANCEL_REFUND = "cancel_refund"


@dataclass(frozen=True)
class Credit:
    """A slot-scoped meal credit."""
    id: UUID
    subscription_id: UUID
    slot: str
    reason: CreditReason
    quantity: int
    expires_at: datetime
    created_at: datetime
    consumed_quantity: int = 0
    status: CreditStatus = CreditStatus.AVAILABLE
    source_date: date | None = None
    notes: str | None = None

    def __post_init__(self):
        if self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if not 0 <= self.consumed_quantity <= self.quantity:
            raise ValueError(
                f"consumed_quantity {self.consumed_quantity} outside [0, {self.quantity}]"
            )

    @property
    def available(self) -> int:
        return self.quantity - self.consumed_quantity

    def is_usable(self, now: datetime) -> bool:
        return (
            self.status == CreditStatus.AVAILABLE
            and self.expires_at > now
            and self.available > 0
        )


@dataclass(frozen=True)
class CreditApplication:
    """One FIFO consumption of a credit against an invoice line."""
    credit_id: UUID
    invoice_id: UUID
    line_item_id: UUID
    quantity_applied: int


@dataclass(frozen=True)
class GlobalCredit:
    """Account-level pooled credit, usable against any vendor."""
    id: UUID
    consumer_id: UUID
    amount: Decimal
    source_type: GlobalCreditSource
    status: GlobalCreditStatus = GlobalCreditStatus.AVAILABLE
    consumed_amount: Decimal = Decimal("0")
    source_group_id: UUID | None = None
    source_invoice_id: UUID | None = None
    expires_at: datetime | None = None
    notes: str | None = None

    @property
    def available_amount(self) -> Decimal:
        return self.amount - self.consumed_amount


@dataclass(frozen=True)
class CreditApplicationSummary:
    """Outcome of applying credits to one invoice."""
    invoice_id: UUID
    credits_applied: int
    billable_meals: int
    net_amount: Decimal
    applications: tuple[CreditApplication, ...] = ()
    already_applied: bool = False


@dataclass(frozen=True)
class CreditConversion:
    """Outcome of converting a group's slot credits into a GlobalCredit."""
    group_id: UUID
    credits_converted: int
    meals_converted: int
    global_credit_amount: Decimal
    global_credit_id: UUID | None = None
    remainder_credit_id: UUID | None = None
    remainder_amount: Decimal = Decimal("0.00")
