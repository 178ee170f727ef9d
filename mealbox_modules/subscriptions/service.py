"""
Subscription Service - the lifecycle of groups and their slot subscriptions.

Responsibility:
    Checkout (group + subscriptions + prorated first invoice), customer
    skips, pause / resume / cancel of a whole group, schedule edits and
    start-date changes.  Billing, credits and orders are delegated to their
    services; this module owns the status state machine and the counters.

Invariants enforced:
    - ``paused_at`` is set iff status is ``paused``, on the group and on
      every subscription in it.
    - ``skips_used_current_cycle`` never exceeds ``skip_limit``: a skip over
      the limit still skips the order but earns no credit.
    - A skipped day always leaves a ``skipped_customer`` order row, so order
      generation never recreates it.
    - ``cancelled`` is terminal.

Failure modes:
    - SubscriptionNotFoundError / SubscriptionGroupNotFoundError.
    - SubscriptionNotActiveError when skipping on a paused/cancelled slot.
    - CutoffPassedError when the skip comes at or after the slot cutoff.
    - InvalidOrderStateError when the day's order is no longer scheduled.
    - InvalidStatusTransitionError for disallowed status moves.
    - InvalidStartDateError / InvalidScheduleError at checkout and edits.
    - StartDateLockedError once any meal of the group was delivered.

The service flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealbox_engines.cycles import (
    PeriodType,
    cycle_for,
    validate_schedule_days,
    validate_start_date,
)
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import (
    CutoffPassedError,
    InvalidOrderStateError,
    RefundError,
    StartDateLockedError,
    SubscriptionGroupNotFoundError,
    SubscriptionNotActiveError,
    SubscriptionNotFoundError,
    VendorSlotNotFoundError,
)
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.models import InvoiceStatus
from mealbox_modules.billing.orm import InvoiceModel
from mealbox_modules.billing.service import BillingService
from mealbox_modules.credits.models import (
    CreditReason,
    GlobalCreditSource,
    GlobalCreditStatus,
)
from mealbox_modules.credits.service import CreditService
from mealbox_modules.orders.models import OrderStatus
from mealbox_modules.orders.orm import OrderModel
from mealbox_modules.orders.service import OrderService
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.config import SubscriptionConfig
from mealbox_modules.subscriptions.models import (
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
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel, SubscriptionModel

logger = get_logger("modules.subscriptions.service")


class SubscriptionService:
    """
    Subscription lifecycle operations.

    Collaborators:
    - PlatformService: vendor slots (price, delivery window), settings
    - CreditService: skip / pause credits and cancel conversion
    - BillingService: checkout and resume invoices, cancel refunds
    - OrderService: order rows touched by skips, pauses and cancels
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        config: SubscriptionConfig | None = None,
        credits: CreditService | None = None,
        billing: BillingService | None = None,
        orders: OrderService | None = None,
        platform: PlatformService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._config = config or SubscriptionConfig()
        self._platform = platform or PlatformService(session, self._clock)
        self._credits = credits or CreditService(session, self._clock, self._platform)
        self._billing = billing or BillingService(
            session, self._clock, credits=self._credits, platform=self._platform,
        )
        self._orders = orders or OrderService(
            session, self._clock, credits=self._credits, platform=self._platform,
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    def _group_row(self, group_id: UUID) -> SubscriptionGroupModel:
        group = self._session.get(SubscriptionGroupModel, group_id)
        if group is None:
            raise SubscriptionGroupNotFoundError(str(group_id))
        return group

    def _subscription_row(self, subscription_id: UUID) -> SubscriptionModel:
        subscription = self._session.get(SubscriptionModel, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(str(subscription_id))
        return subscription

    def get_group(self, group_id: UUID) -> SubscriptionGroup:
        return self._group_row(group_id).to_dto()

    def get_subscription(self, subscription_id: UUID) -> Subscription:
        return self._subscription_row(subscription_id).to_dto()

    def list_subscriptions(self, group_id: UUID) -> list[Subscription]:
        return [s.to_dto() for s in self._group_row(group_id).subscriptions]

    def _pending_invoices(self, group_id: UUID) -> list[InvoiceModel]:
        return list(self._session.execute(
            select(InvoiceModel)
            .where(
                InvoiceModel.group_id == group_id,
                InvoiceModel.status == InvoiceStatus.PENDING.value,
            )
            .order_by(InvoiceModel.period_start)
        ).scalars().all())

    # =========================================================================
    # Checkout
    # =========================================================================

    def create_subscription_group(
        self,
        consumer_id: UUID,
        vendor_id: UUID,
        period_type: PeriodType | str,
        start_date: date,
        slots: Sequence[SlotSelection],
        payment_method: PaymentMethod | str = PaymentMethod.MANUAL,
        mandate_id: str | None = None,
        mandate_customer_id: str | None = None,
        mandate_status: MandateStatus | str | None = None,
        mandate_expires_at: datetime | None = None,
        delivery_address_id: UUID | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CheckoutResult:
        """
        Create a group with one subscription per slot and its first invoice.

        Every slot must be an enabled vendor slot whose schedule leaves at
        least one meal between ``start_date`` and the first renewal.  The
        first invoice covers only that prorated stretch.
        """
        period_type = PeriodType(period_type)
        if not slots:
            raise ValueError("checkout needs at least one slot")
        seen = [s.slot for s in slots]
        if len(set(seen)) != len(seen):
            raise ValueError(f"duplicate slots in checkout: {seen}")

        today = self._clock.today()
        first_cycle_meals: dict[str, int] = {}
        for selection in slots:
            vendor_slot = self._platform.get_vendor_slot(vendor_id, selection.slot)
            if not vendor_slot.is_enabled:
                raise VendorSlotNotFoundError(str(vendor_id), selection.slot)
            first_cycle_meals[selection.slot] = validate_start_date(
                start_date, period_type, selection.schedule_days, today,
            )

        cycle = cycle_for(start_date, period_type)
        next_cycle = cycle_for(cycle.renewal_date, period_type)
        now = self._clock.now()

        group = SubscriptionGroupModel(
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            period_type=period_type.value,
            status=SubscriptionStatus.ACTIVE.value,
            start_date=start_date,
            renewal_date=cycle.renewal_date,
            payment_method=PaymentMethod(payment_method).value,
            mandate_id=mandate_id,
            mandate_customer_id=mandate_customer_id,
            mandate_status=MandateStatus(mandate_status).value if mandate_status else None,
            mandate_expires_at=mandate_expires_at,
            delivery_address_id=delivery_address_id,
            created_at=now,
            created_by_id=actor_id,
        )
        for selection in slots:
            skip_limit = selection.skip_limit
            if skip_limit is None:
                skip_limit = self._config.skip_limit_for(selection.slot)
            group.subscriptions.append(SubscriptionModel(
                consumer_id=consumer_id,
                vendor_id=vendor_id,
                slot=selection.slot,
                schedule_days=list(validate_schedule_days(selection.schedule_days)),
                status=SubscriptionStatus.ACTIVE.value,
                start_date=start_date,
                renewal_date=cycle.renewal_date,
                skip_limit=skip_limit,
                skips_used_current_cycle=0,
                next_cycle_start=next_cycle.cycle_start,
                next_cycle_end=next_cycle.cycle_end,
                delivery_address_id=delivery_address_id,
                created_at=now,
                created_by_id=actor_id,
            ))
        self._session.add(group)
        self._session.flush()

        invoice = self._billing.create_invoice(
            group, cycle, list(group.subscriptions), actor_id=actor_id,
        )

        logger.info("subscription_group_created", extra={
            "group_id": str(group.id),
            "consumer_id": str(consumer_id),
            "vendor_id": str(vendor_id),
            "period_type": period_type.value,
            "start_date": start_date.isoformat(),
            "renewal_date": cycle.renewal_date.isoformat(),
            "invoice_id": str(invoice.id),
        })
        return CheckoutResult(
            group=group.to_dto(),
            subscriptions=tuple(s.to_dto() for s in group.subscriptions),
            invoice_id=invoice.id,
            first_cycle_meals=first_cycle_meals,
        )

    # =========================================================================
    # Skips
    # =========================================================================

    def skip_cutoff(self, subscription: SubscriptionModel, service_date: date) -> datetime:
        """Slot delivery window on ``service_date`` (local zone) minus the cutoff hours."""
        vendor_slot = self._platform.get_vendor_slot(subscription.vendor_id, subscription.slot)
        settings = self._platform.get_settings()
        window = datetime.combine(
            service_date,
            vendor_slot.delivery_window_start,
            tzinfo=ZoneInfo(self._config.timezone),
        )
        return window - timedelta(hours=settings.skip_cutoff_hours)

    def validate_skip_cutoff(self, subscription_id: UUID, service_date: date) -> datetime:
        """Return the cutoff, or raise CutoffPassedError when ``now >= cutoff``."""
        subscription = self._subscription_row(subscription_id)
        cutoff = self.skip_cutoff(subscription, service_date)
        if self._clock.now() >= cutoff:
            raise CutoffPassedError(str(subscription_id), service_date, cutoff)
        return cutoff

    def check_skip_limit(self, subscription_id: UUID) -> SkipLimitStatus:
        subscription = self._subscription_row(subscription_id)
        return SkipLimitStatus(
            within_limit=subscription.skips_used_current_cycle < subscription.skip_limit,
            used=subscription.skips_used_current_cycle,
            limit=subscription.skip_limit,
        )

    def skip_meal(
        self,
        subscription_id: UUID,
        service_date: date,
        slot: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> SkipResult:
        """
        Skip one meal.

        Within the skip limit the customer gets a ``customer_skip`` credit
        and the counter goes up; over the limit the meal is forfeited.
        """
        subscription = self._subscription_row(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise SubscriptionNotActiveError(str(subscription_id), subscription.status)
        slot = slot or subscription.slot
        if slot != subscription.slot:
            raise ValueError(f"subscription {subscription_id} is for {subscription.slot}, not {slot}")

        self.validate_skip_cutoff(subscription_id, service_date)

        order = self._orders.get_order(subscription.id, service_date, slot)
        if order is not None and order.status != OrderStatus.SCHEDULED.value:
            raise InvalidOrderStateError(str(order.id), order.status)

        if order is None:
            order = OrderModel(
                subscription_id=subscription.id,
                group_id=subscription.group_id,
                consumer_id=subscription.consumer_id,
                vendor_id=subscription.vendor_id,
                service_date=service_date,
                slot=slot,
                status=OrderStatus.SKIPPED_CUSTOMER.value,
                reason="customer skip",
                delivery_address_id=subscription.delivery_address_id,
                created_at=self._clock.now(),
                created_by_id=actor_id,
            )
            self._session.add(order)
        else:
            order.status = OrderStatus.SKIPPED_CUSTOMER.value
            order.reason = "customer skip"
            order.updated_by_id = actor_id

        credit_id = None
        if subscription.skips_used_current_cycle < subscription.skip_limit:
            credit = self._credits.create_credit(
                subscription.id,
                slot,
                CreditReason.CUSTOMER_SKIP,
                source_date=service_date,
                notes="customer skip",
                actor_id=actor_id,
            )
            credit_id = credit.id
            subscription.skips_used_current_cycle += 1
            subscription.updated_by_id = actor_id
        self._session.flush()

        logger.info("meal_skipped", extra={
            "subscription_id": str(subscription.id),
            "service_date": service_date.isoformat(),
            "slot": slot,
            "credit_created": credit_id is not None,
            "skips_used": subscription.skips_used_current_cycle,
            "skip_limit": subscription.skip_limit,
        })
        return SkipResult(
            subscription_id=subscription.id,
            service_date=service_date,
            order_id=order.id,
            credit_created=credit_id is not None,
            credit_id=credit_id,
            skips_used=subscription.skips_used_current_cycle,
            skip_limit=subscription.skip_limit,
        )

    # =========================================================================
    # Pause / resume / cancel
    # =========================================================================

    def _fail_pending_invoices(self, group_id: UUID, actor_id: UUID) -> int:
        pending = self._pending_invoices(group_id)
        for invoice in pending:
            self._billing.mark_invoice_failed(invoice.id, actor_id=actor_id)
        return len(pending)

    def _credit_cancelled_orders(self, orders, note: str, actor_id: UUID) -> int:
        """One ``manual_adjustment`` credit per already-paid order that will not be cooked."""
        for order in orders:
            self._credits.create_credit(
                order.subscription_id,
                order.slot,
                CreditReason.MANUAL_ADJUSTMENT,
                source_date=order.service_date,
                notes=note,
                actor_id=actor_id,
            )
        return len(orders)

    def pause_group(
        self,
        group_id: UUID,
        pause_date: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> SubscriptionGroup:
        """
        Pause a group and every subscription in it.

        Scheduled orders from ``pause_date`` (default today) are cancelled
        and credited back; pending invoices stop being chased.
        """
        group = self._group_row(group_id)
        validate_transition("subscription_group", group.id, group.status, SubscriptionStatus.PAUSED)
        now = self._clock.now()
        pause_date = pause_date or self._clock.today()

        group.status = SubscriptionStatus.PAUSED.value
        group.paused_at = now
        group.updated_by_id = actor_id
        for subscription in group.subscriptions:
            if subscription.status == SubscriptionStatus.CANCELLED.value:
                continue
            subscription.status = SubscriptionStatus.PAUSED.value
            subscription.paused_at = now
            subscription.updated_by_id = actor_id

        cancelled = self._orders.cancel_scheduled_orders(group.id, pause_date, "paused", actor_id)
        credited = self._credit_cancelled_orders(cancelled, "pause", actor_id)
        failed_invoices = self._fail_pending_invoices(group.id, actor_id)
        self._session.flush()

        logger.info("subscription_group_paused", extra={
            "group_id": str(group.id),
            "pause_date": pause_date.isoformat(),
            "orders_cancelled": len(cancelled),
            "credits_created": credited,
            "invoices_failed": failed_invoices,
        })
        return group.to_dto()

    def resume_group(
        self,
        group_id: UUID,
        resume_date: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> ResumeResult:
        """
        Reactivate a paused group from ``resume_date`` (default today).

        The renewal date is recomputed from the resume date and a prorated
        invoice is raised for the stretch up to it.
        """
        group = self._group_row(group_id)
        validate_transition("subscription_group", group.id, group.status, SubscriptionStatus.ACTIVE)
        resume_date = resume_date or self._clock.today()
        if resume_date < self._clock.today():
            raise ValueError("resume_date cannot be in the past")

        cycle = cycle_for(resume_date, group.period_type)
        next_cycle = cycle_for(cycle.renewal_date, group.period_type)

        group.status = SubscriptionStatus.ACTIVE.value
        group.paused_at = None
        group.renewal_date = cycle.renewal_date
        group.updated_by_id = actor_id
        active: list[SubscriptionModel] = []
        for subscription in group.subscriptions:
            if subscription.status != SubscriptionStatus.PAUSED.value:
                continue
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.paused_at = None
            subscription.renewal_date = cycle.renewal_date
            subscription.next_cycle_start = next_cycle.cycle_start
            subscription.next_cycle_end = next_cycle.cycle_end
            subscription.skips_used_current_cycle = 0
            subscription.updated_by_id = actor_id
            active.append(subscription)
        self._session.flush()

        invoice_id = None
        if active:
            invoice = self._billing.create_invoice(group, cycle, active, actor_id=actor_id)
            invoice_id = invoice.id

        logger.info("subscription_group_resumed", extra={
            "group_id": str(group.id),
            "resume_date": resume_date.isoformat(),
            "renewal_date": cycle.renewal_date.isoformat(),
            "invoice_id": str(invoice_id) if invoice_id else None,
        })
        return ResumeResult(group=group.to_dto(), invoice_id=invoice_id, renewal_date=cycle.renewal_date)

    def cancel_group(
        self,
        group_id: UUID,
        reason: str | None = None,
        refund_preference: RefundPreference | str = RefundPreference.CREDIT,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CancelResult:
        """
        Cancel a group for good.

        Future scheduled orders are cancelled and credited, then every
        usable slot credit is folded into one GlobalCredit.  With a refund
        preference and a refundable paid invoice that GlobalCredit is held
        as ``pending_refund`` (capped at the invoice amount) until the
        gateway settles it; otherwise it is spendable immediately.
        """
        group = self._group_row(group_id)
        validate_transition("subscription_group", group.id, group.status, SubscriptionStatus.CANCELLED)
        refund_preference = RefundPreference(refund_preference)
        now = self._clock.now()

        cancelled = self._orders.cancel_scheduled_orders(
            group.id, self._clock.today(), "subscription cancelled", actor_id,
        )
        self._credit_cancelled_orders(cancelled, "cancel", actor_id)

        refundable = None
        if refund_preference is RefundPreference.REFUND:
            refundable = self._billing.latest_paid_invoice(group.id)
            if refundable is not None and (
                not refundable.payment_id
                or refundable.refund_status is not None
                or refundable.net_amount <= 0
            ):
                refundable = None

        if refundable is not None:
            conversion = self._credits.convert_group_credits(
                group.id,
                source_type=GlobalCreditSource.CANCEL_REFUND,
                status=GlobalCreditStatus.PENDING_REFUND,
                source_invoice_id=refundable.id,
                max_amount=refundable.net_amount,
                actor_id=actor_id,
            )
        else:
            conversion = self._credits.convert_group_credits(
                group.id,
                source_type=GlobalCreditSource.CANCEL_CREDIT,
                status=GlobalCreditStatus.AVAILABLE,
                actor_id=actor_id,
            )

        refund_requested = False
        if refundable is not None and conversion.global_credit_id is not None:
            try:
                self._billing.process_refund(
                    refundable.id,
                    amount=conversion.global_credit_amount,
                    reason=reason or "subscription cancelled",
                    actor_id=actor_id,
                )
                refund_requested = True
            except RefundError:
                logger.warning("cancel_refund_rejected", exc_info=True, extra={
                    "group_id": str(group.id),
                    "invoice_id": str(refundable.id),
                })
                self._credits.release_pending_refund(conversion.global_credit_id, actor_id=actor_id)

        self._fail_pending_invoices(group.id, actor_id)

        group.status = SubscriptionStatus.CANCELLED.value
        group.paused_at = None
        group.cancelled_at = now
        group.cancellation_reason = reason
        group.updated_by_id = actor_id
        for subscription in group.subscriptions:
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.paused_at = None
            subscription.cancelled_at = now
            subscription.updated_by_id = actor_id
        self._session.flush()

        logger.info("subscription_group_cancelled", extra={
            "group_id": str(group.id),
            "reason": reason,
            "refund_preference": refund_preference.value,
            "credits_converted": conversion.credits_converted,
            "global_credit_amount": str(conversion.global_credit_amount),
            "refund_requested": refund_requested,
        })
        return CancelResult(
            group_id=group.id,
            credits_converted=conversion.credits_converted,
            global_credit_id=conversion.global_credit_id,
            global_credit_amount=conversion.global_credit_amount,
            refund_requested=refund_requested,
            orders_cancelled=len(cancelled),
        )

    # =========================================================================
    # Edits
    # =========================================================================

    def update_schedule(
        self,
        subscription_id: UUID,
        schedule_days: Sequence[int],
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Subscription:
        """Replace a slot's weekdays; takes effect from the next generated cycle."""
        subscription = self._subscription_row(subscription_id)
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise SubscriptionNotActiveError(str(subscription_id), subscription.status)
        days = validate_schedule_days(schedule_days)
        previous = list(subscription.schedule_days)
        subscription.schedule_days = list(days)
        subscription.updated_by_id = actor_id
        self._session.flush()

        logger.info("schedule_updated", extra={
            "subscription_id": str(subscription.id),
            "previous_days": previous,
            "schedule_days": list(days),
        })
        return subscription.to_dto()

    def change_start_date(
        self,
        group_id: UUID,
        new_start: date,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> SubscriptionGroup:
        """
        Move a group's start date before any meal was delivered.

        Renewal and next-cycle dates follow the new start; orders dated
        before it are removed.  Existing invoices are left as they are.
        """
        group = self._group_row(group_id)
        if group.status == SubscriptionStatus.CANCELLED.value:
            raise SubscriptionNotActiveError(str(group_id), group.status)
        delivered = self._orders.count_delivered(group.id)
        if delivered:
            raise StartDateLockedError(str(group_id), delivered)

        today = self._clock.today()
        for subscription in group.subscriptions:
            validate_start_date(new_start, group.period_type, subscription.schedule_days, today)

        cycle = cycle_for(new_start, group.period_type)
        next_cycle = cycle_for(cycle.renewal_date, group.period_type)
        previous = group.start_date

        group.start_date = new_start
        group.renewal_date = cycle.renewal_date
        group.updated_by_id = actor_id
        for subscription in group.subscriptions:
            subscription.start_date = new_start
            subscription.renewal_date = cycle.renewal_date
            subscription.next_cycle_start = next_cycle.cycle_start
            subscription.next_cycle_end = next_cycle.cycle_end
            subscription.updated_by_id = actor_id
        removed = self._orders.delete_orders_before(group.id, new_start)
        self._session.flush()

        logger.info("start_date_changed", extra={
            "group_id": str(group.id),
            "previous_start": previous.isoformat(),
            "new_start": new_start.isoformat(),
            "orders_removed": removed,
        })
        return group.to_dto()

    # =========================================================================
    # Mandates
    # =========================================================================

    def attach_mandate(
        self,
        group_id: UUID,
        mandate_id: str,
        mandate_customer_id: str | None = None,
        mandate_status: MandateStatus | str = MandateStatus.ACTIVE,
        mandate_expires_at: datetime | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> SubscriptionGroup:
        """Switch a group to mandate auto-charge."""
        group = self._group_row(group_id)
        group.payment_method = PaymentMethod.MANDATE.value
        group.mandate_id = mandate_id
        group.mandate_customer_id = mandate_customer_id
        group.mandate_status = MandateStatus(mandate_status).value
        group.mandate_expires_at = mandate_expires_at
        group.updated_by_id = actor_id
        self._session.flush()
        logger.info("mandate_attached", extra={
            "group_id": str(group.id),
            "mandate_status": group.mandate_status,
        })
        return group.to_dto()

