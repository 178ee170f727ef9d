"""
Order Service - expands paid invoices into daily meal orders.

Responsibility:
    Generates one ``scheduled`` order per scheduled meal of a paid
    invoice's cycle, and owns the bulk order edits the subscription
    lifecycle needs (cancel from a date, drop before a date).

Invariants enforced:
    - One order per (subscription, service_date, slot); existing rows are
      never duplicated or overwritten.
    - A cycle is generated at most once: an invoice whose period already
      holds generated orders is only stamped ``orders_generated_at``.
    - Vendor holidays and capacity breaches become ``vendor_holiday`` /
      ``ops_failure`` credits (idempotent per date) instead of orders.

The service flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from mealbox_engines.cycles import dates_for_weekdays
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import (
    InvalidInvoiceStateError,
    InvalidOrderStateError,
    InvoiceNotFoundError,
    OrderNotFoundError,
)
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.models import InvoiceStatus
from mealbox_modules.billing.orm import InvoiceModel
from mealbox_modules.credits.models import CreditReason
from mealbox_modules.credits.service import CreditService
from mealbox_modules.orders.models import Order, OrderGenerationOutcome, OrderStatus
from mealbox_modules.orders.orm import OrderModel
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.orm import SubscriptionModel

logger = get_logger("modules.orders.service")

# Statuses that occupy vendor capacity on a day.
_CAPACITY_STATUSES = (OrderStatus.SCHEDULED.value, OrderStatus.DELIVERED.value)

# Rows that can exist before generation runs (skip ahead of time, pause).
_NOT_GENERATED_STATUSES = (OrderStatus.SKIPPED_CUSTOMER.value, OrderStatus.CANCELLED.value)


class OrderService:
    """Order generation and bulk order edits."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        credits: CreditService | None = None,
        platform: PlatformService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._platform = platform or PlatformService(session, self._clock)
        self._credits = credits or CreditService(session, self._clock, self._platform)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, subscription_id: UUID, service_date: date, slot: str) -> OrderModel | None:
        return self._session.execute(
            select(OrderModel).where(
                OrderModel.subscription_id == subscription_id,
                OrderModel.service_date == service_date,
                OrderModel.slot == slot,
            )
        ).scalar_one_or_none()

    def list_orders(self, group_id: UUID) -> list[Order]:
        rows = self._session.execute(
            select(OrderModel)
            .where(OrderModel.group_id == group_id)
            .order_by(OrderModel.service_date, OrderModel.slot)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def count_generated_orders(self, group_id: UUID, start: date, end: date) -> int:
        """Live generated orders in [start, end]; customer skips and cancelled rows excluded."""
        return self._session.execute(
            select(func.count(OrderModel.id)).where(
                OrderModel.group_id == group_id,
                OrderModel.service_date >= start,
                OrderModel.service_date <= end,
                OrderModel.status.not_in(_NOT_GENERATED_STATUSES),
            )
        ).scalar_one()

    def count_delivered(self, group_id: UUID) -> int:
        return self._session.execute(
            select(func.count(OrderModel.id)).where(
                OrderModel.group_id == group_id,
                OrderModel.status == OrderStatus.DELIVERED.value,
            )
        ).scalar_one()

    def _vendor_load(self, vendor_id: UUID, service_date: date, slot: str) -> int:
        return self._session.execute(
            select(func.count(OrderModel.id)).where(
                OrderModel.vendor_id == vendor_id,
                OrderModel.service_date == service_date,
                OrderModel.slot == slot,
                OrderModel.status.in_(_CAPACITY_STATUSES),
            )
        ).scalar_one()

    # =========================================================================
    # Generation
    # =========================================================================

    def generate_orders_for_invoice(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> OrderGenerationOutcome:
        """
        Create the orders for a paid invoice's cycle.

        Dates come from each active subscription's schedule between
        ``max(period_start, start_date)`` and ``period_end``.
        """
        invoice = self._session.get(InvoiceModel, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        if invoice.status != InvoiceStatus.PAID.value:
            raise InvalidInvoiceStateError(str(invoice_id), invoice.status, "generate_orders")

        now = self._clock.now()
        if invoice.orders_generated_at is not None:
            return OrderGenerationOutcome(invoice_id=invoice.id, already_generated=True)

        existing = self.count_generated_orders(
            invoice.group_id, invoice.period_start, invoice.period_end,
        )
        if existing:
            invoice.orders_generated_at = now
            invoice.updated_by_id = actor_id
            self._session.flush()
            logger.info("orders_already_generated", extra={
                "invoice_id": str(invoice.id),
                "group_id": str(invoice.group_id),
                "existing_orders": existing,
            })
            return OrderGenerationOutcome(invoice_id=invoice.id, already_generated=True)

        orders_created = 0
        holiday_credits = 0
        capacity_credits = 0
        order_dates: list[date] = []
        for raw_id in invoice.subscription_ids or ():
            subscription = self._session.get(SubscriptionModel, UUID(str(raw_id)))
            if subscription is None or subscription.status != "active":
                continue
            start = max(invoice.period_start, subscription.start_date)
            end = invoice.period_end
            holidays = self._platform.holidays_between(
                subscription.vendor_id, subscription.slot, start, end,
            )
            capacity = self._platform.get_vendor_slot(
                subscription.vendor_id, subscription.slot,
            ).max_meals_per_day

            for service_date in dates_for_weekdays(start, end, subscription.schedule_days):
                if service_date in holidays:
                    self._credits.create_credit(
                        subscription.id,
                        subscription.slot,
                        CreditReason.VENDOR_HOLIDAY,
                        source_date=service_date,
                        notes="vendor holiday",
                        actor_id=actor_id,
                    )
                    holiday_credits += 1
                    continue
                existing_order = self.get_order(subscription.id, service_date, subscription.slot)
                if existing_order is not None and existing_order.status != OrderStatus.CANCELLED.value:
                    continue
                if capacity > 0 and self._vendor_load(
                    subscription.vendor_id, service_date, subscription.slot,
                ) >= capacity:
                    self._credits.create_credit(
                        subscription.id,
                        subscription.slot,
                        CreditReason.OPS_FAILURE,
                        source_date=service_date,
                        notes="vendor capacity reached",
                        actor_id=actor_id,
                    )
                    capacity_credits += 1
                    continue

                if existing_order is not None:
                    # cancelled by a pause, scheduled again by the new cycle
                    existing_order.status = OrderStatus.SCHEDULED.value
                    existing_order.reason = None
                    existing_order.updated_by_id = actor_id
                else:
                    self._session.add(OrderModel(
                        subscription_id=subscription.id,
                        group_id=subscription.group_id,
                        consumer_id=subscription.consumer_id,
                        vendor_id=subscription.vendor_id,
                        service_date=service_date,
                        slot=subscription.slot,
                        status=OrderStatus.SCHEDULED.value,
                        delivery_address_id=subscription.delivery_address_id,
                        created_at=now,
                        created_by_id=actor_id,
                    ))
                self._session.flush()
                orders_created += 1
                order_dates.append(service_date)

        invoice.orders_generated_at = now
        invoice.updated_by_id = actor_id
        self._session.flush()

        logger.info("orders_generated", extra={
            "invoice_id": str(invoice.id),
            "group_id": str(invoice.group_id),
            "orders_created": orders_created,
            "holiday_credits": holiday_credits,
            "capacity_credits": capacity_credits,
        })
        return OrderGenerationOutcome(
            invoice_id=invoice.id,
            orders_created=orders_created,
            holiday_credits=holiday_credits,
            capacity_credits=capacity_credits,
            order_dates=tuple(order_dates),
        )

    # =========================================================================
    # Bulk edits
    # =========================================================================

    def cancel_scheduled_orders(
        self,
        group_id: UUID,
        from_date: date,
        reason: str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> list[Order]:
        """Cancel every still-scheduled order of the group on or after ``from_date``."""
        rows = self._session.execute(
            select(OrderModel)
            .where(
                OrderModel.group_id == group_id,
                OrderModel.service_date >= from_date,
                OrderModel.status == OrderStatus.SCHEDULED.value,
            )
            .order_by(OrderModel.service_date, OrderModel.slot)
        ).scalars().all()
        for row in rows:
            row.status = OrderStatus.CANCELLED.value
            row.reason = reason
            row.updated_by_id = actor_id
        self._session.flush()
        return [row.to_dto() for row in rows]

    def delete_orders_before(self, group_id: UUID, before: date) -> int:
        """Remove not-yet-delivered orders dated before ``before``."""
        result = self._session.execute(
            delete(OrderModel).where(
                OrderModel.group_id == group_id,
                OrderModel.service_date < before,
                OrderModel.status != OrderStatus.DELIVERED.value,
            )
        )
        self._session.flush()
        return result.rowcount or 0

    def mark_delivered(self, order_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> Order:
        row = self._session.get(OrderModel, order_id)
        if row is None:
            raise OrderNotFoundError(str(order_id))
        if row.status != OrderStatus.SCHEDULED.value:
            raise InvalidOrderStateError(str(order_id), row.status)
        row.status = OrderStatus.DELIVERED.value
        row.updated_by_id = actor_id
        self._session.flush()
        return row.to_dto()
