"""
Orders Module.

Expands paid invoices into one order per scheduled meal, turning vendor
holidays and capacity breaches into credits instead.
"""

from mealbox_modules.orders.models import Order, OrderGenerationOutcome, OrderStatus

__all__ = ["Order", "OrderGenerationOutcome", "OrderStatus"]
