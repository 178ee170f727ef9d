"""
Mealbox Modules.

Domain modules of the subscription billing engine.  Each module contains:
- Domain models (frozen dataclasses and status enums)
- ORM models (SQLAlchemy persistence)
- A service (operations over one session; the caller owns the commit)

Modules:
- Platform: platform settings, vendor slots, vendor holidays
- Subscriptions: groups, per-slot subscriptions, lifecycle and skips
- Credits: slot credits, FIFO application, expiry, global credits
- Billing: invoices, line items, payments, refunds
- Orders: per-day meal orders and order generation
- Trials: trial periods
"""
