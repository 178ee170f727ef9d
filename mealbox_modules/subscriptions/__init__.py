"""
Subscriptions Module.

Subscription groups (one consumer-vendor billing relationship) and their
per-slot subscriptions: checkout, skips, pause/resume/cancel, schedule
and start-date edits.
"""

from mealbox_modules.subscriptions.config import SubscriptionConfig
from mealbox_modules.subscriptions.models import (
    ALLOWED_TRANSITIONS,
    CancelResult,
    CheckoutResult,
    MandateStatus,
    PaymentMethod,
    RefundPreference,
    ResumeResult,
    SkipLimitStatus,
    SkipResult,
    SlotSelection,
    Subscription,
    SubscriptionGroup,
    SubscriptionStatus,
    validate_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "CancelResult",
    "CheckoutResult",
    "MandateStatus",
    "PaymentMethod",
    "RefundPreference",
    "ResumeResult",
    "SkipLimitStatus",
    "SkipResult",
    "SlotSelection",
    "Subscription",
    "SubscriptionConfig",
    "SubscriptionGroup",
    "SubscriptionStatus",
    "validate_transition",
]
