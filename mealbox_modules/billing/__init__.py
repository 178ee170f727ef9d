"""
Billing Module.

Cycle invoices built from scheduled meals minus applied credits, payment
linkage through the payment gateway, and refund tracking.
"""

from mealbox_modules.billing.models import (
    Invoice,
    InvoiceAmountPreview,
    InvoiceLineItem,
    InvoiceStatus,
    PaymentAttempt,
    PaymentMode,
    RefundStatus,
)

__all__ = [
    "Invoice",
    "InvoiceAmountPreview",
    "InvoiceLineItem",
    "InvoiceStatus",
    "PaymentAttempt",
    "PaymentMode",
    "RefundStatus",
]
