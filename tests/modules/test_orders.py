"""
Tests for mealbox_modules.orders.service.

Order generation from paid invoices: schedule expansion, vendor holiday
and capacity credits, idempotency, and the bulk edits used by pause,
cancel and start-date changes.
"""

from datetime import date, time

import pytest

from mealbox_kernel.exceptions import InvalidInvoiceStateError, InvalidOrderStateError
from mealbox_modules.credits.models import CreditReason
from mealbox_modules.orders.models import OrderStatus

from tests.conftest import LUNCH_PRICE, TEST_VENDOR_ID


class TestGeneration:

    def test_paid_invoice_expands_to_one_order_per_meal(self, services, paid_group):
        checkout = paid_group()
        outcome = services.orders.generate_orders_for_invoice(checkout.invoice_id)

        assert outcome.orders_created == 5
        assert outcome.order_dates == tuple(date(2026, 1, d) for d in range(5, 10))
        orders = services.orders.list_orders(checkout.group.id)
        assert {o.status for o in orders} == {OrderStatus.SCHEDULED}
        assert services.billing.get_invoice(checkout.invoice_id).orders_generated_at is not None

    def test_unpaid_invoice_rejected(self, services, make_group):
        checkout = make_group()
        with pytest.raises(InvalidInvoiceStateError):
            services.orders.generate_orders_for_invoice(checkout.invoice_id)

    def test_second_run_is_a_no_op(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)
        again = services.orders.generate_orders_for_invoice(checkout.invoice_id)

        assert again.already_generated
        assert again.orders_created == 0
        assert services.orders.count_generated_orders(
            checkout.group.id, date(2026, 1, 5), date(2026, 1, 11),
        ) == 5

    def test_midweek_start_generates_from_start_date(self, services, paid_group):
        checkout = paid_group(slots=("lunch", "dinner"), start=date(2026, 1, 8))
        outcome = services.orders.generate_orders_for_invoice(checkout.invoice_id)
        # Thu and Fri, two slots
        assert outcome.orders_created == 4
        assert min(outcome.order_dates) == date(2026, 1, 8)

    def test_skipped_day_keeps_its_row(self, services, paid_group):
        checkout = paid_group()
        lunch = checkout.subscriptions[0]
        services.subscriptions.skip_meal(lunch.id, date(2026, 1, 7))

        outcome = services.orders.generate_orders_for_invoice(checkout.invoice_id)

        assert outcome.orders_created == 4
        skipped = services.orders.get_order(lunch.id, date(2026, 1, 7), "lunch")
        assert skipped.status == OrderStatus.SKIPPED_CUSTOMER.value


class TestHolidaysAndCapacity:

    def test_holiday_becomes_vendor_holiday_credit(self, services, paid_group):
        services.platform.add_vendor_holiday(TEST_VENDOR_ID, date(2026, 1, 7), reason="festival")
        checkout = paid_group()
        lunch = checkout.subscriptions[0]

        outcome = services.orders.generate_orders_for_invoice(checkout.invoice_id)

        assert outcome.orders_created == 4
        assert outcome.holiday_credits == 1
        assert date(2026, 1, 7) not in outcome.order_dates
        credits = services.credits.list_credits(lunch.id)
        assert [(c.reason, c.source_date) for c in credits] == [
            (CreditReason.VENDOR_HOLIDAY, date(2026, 1, 7)),
        ]

    def test_slot_holiday_spares_other_slots(self, services, paid_group):
        services.platform.add_vendor_holiday(TEST_VENDOR_ID, date(2026, 1, 7), slot="dinner")
        checkout = paid_group(slots=("lunch", "dinner"))
        outcome = services.orders.generate_orders_for_invoice(checkout.invoice_id)
        assert outcome.orders_created == 9
        assert outcome.holiday_credits == 1

    def test_capacity_breach_becomes_ops_failure_credit(self, services, paid_group):
        services.platform.upsert_vendor_slot(
            TEST_VENDOR_ID, "lunch", time(12, 30), LUNCH_PRICE, max_meals_per_day=1,
        )
        first = paid_group()
        second = paid_group()

        services.orders.generate_orders_for_invoice(first.invoice_id)
        outcome = services.orders.generate_orders_for_invoice(second.invoice_id)

        assert outcome.orders_created == 0
        assert outcome.capacity_credits == 5
        lunch = second.subscriptions[0]
        assert services.credits.get_available_credits(lunch.id, "lunch") == 5
        reasons = {c.reason for c in services.credits.list_credits(lunch.id)}
        assert reasons == {CreditReason.OPS_FAILURE}


class TestBulkEdits:

    def test_cancel_scheduled_from_date(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)

        cancelled = services.orders.cancel_scheduled_orders(
            checkout.group.id, date(2026, 1, 8), "paused",
        )

        assert [o.service_date for o in cancelled] == [date(2026, 1, 8), date(2026, 1, 9)]
        assert all(o.status is OrderStatus.CANCELLED for o in cancelled)
        assert services.orders.count_generated_orders(
            checkout.group.id, date(2026, 1, 5), date(2026, 1, 11),
        ) == 3

    def test_mark_delivered_once(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)
        first = services.orders.list_orders(checkout.group.id)[0]

        delivered = services.orders.mark_delivered(first.id)
        assert delivered.status is OrderStatus.DELIVERED
        assert services.orders.count_delivered(checkout.group.id) == 1
        with pytest.raises(InvalidOrderStateError):
            services.orders.mark_delivered(first.id)

    def test_delete_before_keeps_delivered(self, services, paid_group):
        checkout = paid_group()
        services.orders.generate_orders_for_invoice(checkout.invoice_id)
        monday = services.orders.list_orders(checkout.group.id)[0]
        services.orders.mark_delivered(monday.id)

        removed = services.orders.delete_orders_before(checkout.group.id, date(2026, 1, 8))

        assert removed == 2
        remaining = [o.service_date for o in services.orders.list_orders(checkout.group.id)]
        assert remaining == [date(2026, 1, 5), date(2026, 1, 8), date(2026, 1, 9)]
