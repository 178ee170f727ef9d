"""
Tests for mealbox_modules.subscriptions.service -- the subscription lifecycle.

Checkout validation, skips (limit and cutoff), pause/resume, cancellation
with credit or refund, schedule and start-date edits, and mandates.

Clock: Monday 2026-01-05 12:00 UTC.  Lunch is delivered at 12:30 IST
(07:00 UTC) with a 3h cutoff, so today's lunch can no longer be skipped
but tomorrow's can.
"""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from mealbox_kernel.exceptions import (
    CutoffPassedError,
    InvalidOrderStateError,
    InvalidScheduleError,
    InvalidStartDateError,
    InvalidStatusTransitionError,
    StartDateLockedError,
    SubscriptionNotActiveError,
    VendorSlotNotFoundError,
)
from mealbox_modules.billing.models import InvoiceStatus, RefundStatus
from mealbox_modules.credits.models import (
    CreditReason,
    GlobalCreditSource,
    GlobalCreditStatus,
)
from mealbox_modules.orders.models import OrderStatus
from mealbox_modules.subscriptions.models import (
    MandateStatus,
    PaymentMethod,
    SlotSelection,
    SubscriptionStatus,
)

from tests.conftest import DINNER_PRICE, LUNCH_PRICE, MONDAY, TEST_VENDOR_ID, WEEKDAYS

TUESDAY = date(2026, 1, 6)


# =============================================================================
# Checkout
# =============================================================================


class TestCheckout:

    def test_group_and_subscriptions_created(self, make_group):
        checkout = make_group(slots=("lunch", "dinner"))

        assert checkout.group.status is SubscriptionStatus.ACTIVE
        assert checkout.group.renewal_date == date(2026, 1, 12)
        assert len(checkout.subscriptions) == 2
        for subscription in checkout.subscriptions:
            assert subscription.skip_limit == 2
            assert subscription.schedule_days == WEEKDAYS
            assert subscription.next_cycle_start == date(2026, 1, 12)
            assert subscription.next_cycle_end == date(2026, 1, 18)

    def test_disabled_slot_rejected(self, services, make_group):
        services.platform.upsert_vendor_slot(
            TEST_VENDOR_ID, "dinner", time(19, 30), DINNER_PRICE, is_enabled=False,
        )
        with pytest.raises(VendorSlotNotFoundError):
            make_group(slots=("dinner",))

    def test_unknown_vendor_rejected(self, services, vendor):
        with pytest.raises(VendorSlotNotFoundError):
            services.subscriptions.create_subscription_group(
                consumer_id=uuid4(),
                vendor_id=uuid4(),
                period_type="weekly",
                start_date=MONDAY,
                slots=[SlotSelection(slot="lunch", schedule_days=WEEKDAYS)],
            )

    def test_duplicate_slots_rejected(self, make_group):
        with pytest.raises(ValueError):
            make_group(slots=("lunch", "lunch"))

    def test_past_start_rejected(self, make_group):
        with pytest.raises(InvalidStartDateError):
            make_group(start=date(2026, 1, 2))

    def test_explicit_skip_limit_kept(self, services, vendor):
        checkout = services.subscriptions.create_subscription_group(
            consumer_id=uuid4(),
            vendor_id=vendor,
            period_type="monthly",
            start_date=date(2026, 1, 19),
            slots=[SlotSelection(slot="lunch", schedule_days=(0,), skip_limit=5)],
        )
        assert checkout.subscriptions[0].skip_limit == 5
        assert checkout.group.renewal_date == date(2026, 2, 1)
        # Mondays 19 and 26 Jan
        assert services.billing.get_invoice(checkout.invoice_id).net_amount == 2 * LUNCH_PRICE


# =============================================================================
# Skips
# =============================================================================


class TestSkips:

    def test_skip_within_limit_earns_credit(self, services, make_group):
        lunch = make_group().subscriptions[0]
        result = services.subscriptions.skip_meal(lunch.id, TUESDAY)

        assert result.credit_created
        assert result.skips_used == 1
        credit = services.credits.list_credits(lunch.id)[0]
        assert credit.id == result.credit_id
        assert credit.reason is CreditReason.CUSTOMER_SKIP
        order = services.orders.get_order(lunch.id, TUESDAY, "lunch")
        assert order.status == OrderStatus.SKIPPED_CUSTOMER.value

    def test_skip_over_limit_forfeits_meal(self, services, make_group):
        lunch = make_group().subscriptions[0]
        for day in (6, 7):
            services.subscriptions.skip_meal(lunch.id, date(2026, 1, day))

        assert not services.subscriptions.check_skip_limit(lunch.id).within_limit
        result = services.subscriptions.skip_meal(lunch.id, date(2026, 1, 8))

        assert not result.credit_created
        assert result.credit_id is None
        assert result.skips_used == 2
        assert services.credits.get_available_credits(lunch.id, "lunch") == 2

    def test_cutoff_passed_for_today(self, services, make_group):
        lunch = make_group().subscriptions[0]
        with pytest.raises(CutoffPassedError):
            services.subscriptions.skip_meal(lunch.id, MONDAY)

    def test_cutoff_is_three_hours_before_window(self, services, make_group):
        lunch = make_group().subscriptions[0]
        cutoff = services.subscriptions.validate_skip_cutoff(lunch.id, TUESDAY)
        assert cutoff == datetime(2026, 1, 6, 4, 0, tzinfo=timezone.utc)

    def test_already_skipped_day_rejected(self, services, make_group):
        lunch = make_group().subscriptions[0]
        services.subscriptions.skip_meal(lunch.id, TUESDAY)
        with pytest.raises(InvalidOrderStateError):
            services.subscriptions.skip_meal(lunch.id, TUESDAY)

    def test_wrong_slot_rejected(self, services, make_group):
        lunch = make_group().subscriptions[0]
        with pytest.raises(ValueError):
            services.subscriptions.skip_meal(lunch.id, TUESDAY, slot="dinner")

    def test_paused_subscription_cannot_skip(self, services, make_group):
        checkout = make_group()
        services.subscriptions.pause_group(checkout.group.id)
        with pytest.raises(SubscriptionNotActiveError):
            services.subscriptions.skip_meal(checkout.subscriptions[0].id, TUESDAY)


# =============================================================================
# Pause / resume
# =============================================================================


class TestPauseResume:

    def test_pause_cancels_and_credits_scheduled_orders(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)

        group = services.subscriptions.pause_group(checkout.group.id, pause_date=date(2026, 1, 7))

        assert group.status is SubscriptionStatus.PAUSED
        assert group.paused_at is not None
        statuses = {o.service_date: o.status for o in services.orders.list_orders(group.id)}
        assert statuses[date(2026, 1, 6)] is OrderStatus.SCHEDULED
        assert statuses[date(2026, 1, 7)] is OrderStatus.CANCELLED
        lunch = checkout.subscriptions[0]
        assert services.credits.get_available_credits(lunch.id, "lunch") == 3
        assert services.subscriptions.get_subscription(lunch.id).status is SubscriptionStatus.PAUSED

    def test_pause_fails_pending_invoice(self, services, make_group):
        checkout = make_group()
        services.subscriptions.pause_group(checkout.group.id)
        assert services.billing.get_invoice(checkout.invoice_id).status is InvoiceStatus.FAILED

    def test_pause_twice_rejected(self, services, make_group):
        checkout = make_group()
        services.subscriptions.pause_group(checkout.group.id)
        with pytest.raises(InvalidStatusTransitionError):
            services.subscriptions.pause_group(checkout.group.id)

    def test_resume_recomputes_renewal_and_invoices_stretch(self, services, clock, make_group):
        checkout = make_group()
        services.subscriptions.pause_group(checkout.group.id)
        clock.advance(int(timedelta(days=2).total_seconds()))

        result = services.subscriptions.resume_group(checkout.group.id)

        assert result.group.status is SubscriptionStatus.ACTIVE
        assert result.group.paused_at is None
        assert result.renewal_date == date(2026, 1, 12)
        invoice = services.billing.get_invoice(result.invoice_id)
        assert invoice.period_start == date(2026, 1, 7)
        assert invoice.net_amount == 3 * LUNCH_PRICE

    def test_resume_resets_skip_counter(self, services, make_group):
        checkout = make_group()
        lunch = checkout.subscriptions[0]
        services.subscriptions.skip_meal(lunch.id, TUESDAY)
        services.subscriptions.pause_group(checkout.group.id)
        services.subscriptions.resume_group(checkout.group.id, resume_date=date(2026, 1, 12))
        assert services.subscriptions.get_subscription(lunch.id).skips_used_current_cycle == 0

    def test_resume_in_past_rejected(self, services, make_group):
        checkout = make_group()
        services.subscriptions.pause_group(checkout.group.id)
        with pytest.raises(ValueError):
            services.subscriptions.resume_group(checkout.group.id, resume_date=date(2026, 1, 1))

    def test_resume_active_group_rejected(self, services, make_group):
        checkout = make_group()
        with pytest.raises(InvalidStatusTransitionError):
            services.subscriptions.resume_group(checkout.group.id)


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:

    def test_cancel_with_credit(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)

        result = services.subscriptions.cancel_group(checkout.group.id, reason="moving")

        assert result.orders_cancelled == 5
        assert result.global_credit_amount == 5 * LUNCH_PRICE
        assert not result.refund_requested
        credit = services.credits.get_global_credit(result.global_credit_id)
        assert credit.status is GlobalCreditStatus.AVAILABLE
        assert credit.source_type is GlobalCreditSource.CANCEL_CREDIT
        assert services.credits.get_global_balance(checkout.group.consumer_id) == 5 * LUNCH_PRICE

        group = services.subscriptions.get_group(checkout.group.id)
        assert group.status is SubscriptionStatus.CANCELLED
        assert group.cancellation_reason == "moving"
        assert all(
            s.status is SubscriptionStatus.CANCELLED
            for s in services.subscriptions.list_subscriptions(group.id)
        )

    def test_cancel_with_refund_settles_on_webhook(self, services, gateway, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)

        result = services.subscriptions.cancel_group(
            checkout.group.id, refund_preference="refund",
        )

        assert result.refund_requested
        assert gateway.refunds[0].amount == 5 * LUNCH_PRICE
        pending = services.credits.get_global_credit(result.global_credit_id)
        assert pending.status is GlobalCreditStatus.PENDING_REFUND
        assert services.credits.get_global_balance(checkout.group.consumer_id) == Decimal("0.00")

        invoice = services.billing.get_invoice(checkout.invoice_id)
        assert invoice.refund_status is RefundStatus.PENDING
        services.billing.handle_refund_webhook(invoice.refund_id, "processed")

        settled = services.credits.get_global_credit(result.global_credit_id)
        assert settled.status is GlobalCreditStatus.CONSUMED

    def test_failed_refund_can_become_credit(self, services, gateway, paid_group):
        gateway.fail_refund = True
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)

        result = services.subscriptions.cancel_group(checkout.group.id, refund_preference="refund")

        assert services.billing.get_invoice(checkout.invoice_id).refund_status is RefundStatus.FAILED
        credit = services.billing.convert_failed_refund_to_credit(result.global_credit_id)
        assert credit.status is GlobalCreditStatus.AVAILABLE
        assert services.credits.get_global_balance(checkout.group.consumer_id) == 5 * LUNCH_PRICE

    def test_refund_without_paid_invoice_falls_back_to_credit(self, services, make_group):
        checkout = make_group()
        lunch = checkout.subscriptions[0]
        services.subscriptions.skip_meal(lunch.id, TUESDAY)

        result = services.subscriptions.cancel_group(checkout.group.id, refund_preference="refund")

        assert not result.refund_requested
        assert result.global_credit_amount == LUNCH_PRICE
        assert services.billing.get_invoice(checkout.invoice_id).status is InvoiceStatus.FAILED

    def test_cancelled_is_terminal(self, services, make_group):
        checkout = make_group()
        services.subscriptions.cancel_group(checkout.group.id)
        with pytest.raises(InvalidStatusTransitionError):
            services.subscriptions.cancel_group(checkout.group.id)
        with pytest.raises(InvalidStatusTransitionError):
            services.subscriptions.resume_group(checkout.group.id)


# =============================================================================
# Edits and mandates
# =============================================================================


class TestEdits:

    def test_update_schedule(self, services, make_group):
        lunch = make_group().subscriptions[0]
        updated = services.subscriptions.update_schedule(lunch.id, [4, 0, 2])
        assert updated.schedule_days == (0, 2, 4)

    def test_update_schedule_validates_days(self, services, make_group):
        lunch = make_group().subscriptions[0]
        with pytest.raises(InvalidScheduleError):
            services.subscriptions.update_schedule(lunch.id, [])

    def test_change_start_date_moves_renewal(self, services, make_group):
        checkout = make_group(start=date(2026, 1, 7))
        group = services.subscriptions.change_start_date(checkout.group.id, date(2026, 1, 14))
        assert group.start_date == date(2026, 1, 14)
        assert group.renewal_date == date(2026, 1, 19)
        lunch = services.subscriptions.get_subscription(checkout.subscriptions[0].id)
        assert lunch.next_cycle_start == date(2026, 1, 19)

    def test_change_start_date_locked_after_delivery(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)
        first = services.orders.list_orders(checkout.group.id)[0]
        services.orders.mark_delivered(first.id)
        with pytest.raises(StartDateLockedError):
            services.subscriptions.change_start_date(checkout.group.id, date(2026, 1, 12))

    def test_attach_mandate(self, services, clock, make_group):
        checkout = make_group()
        group = services.subscriptions.attach_mandate(
            checkout.group.id, "token_9", mandate_customer_id="cust_9",
        )
        assert group.payment_method is PaymentMethod.MANDATE
        assert group.mandate_status is MandateStatus.ACTIVE
        assert group.has_usable_mandate(clock.now())
