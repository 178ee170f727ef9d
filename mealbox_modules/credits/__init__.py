"""
Credit Ledger Module.

Slot-scoped meal credits (skips, vendor holidays, ops failures, manual
adjustments), their FIFO application to invoices, and account-level
global credits produced by cancellation.
"""

from mealbox_modules.credits.models import (
    Credit,
    CreditApplication,
    CreditReason,
    CreditStatus,
    GlobalCredit,
    GlobalCreditSource,
    GlobalCreditStatus,
)

__all__ = [
    "Credit",
    "CreditApplication",
    "CreditReason",
    "CreditStatus",
    "GlobalCredit",
    "GlobalCreditSource",
    "GlobalCreditStatus",
]
