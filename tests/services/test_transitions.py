"""
Tests for mealbox_services.transitions -- renewals and paused-group auto-cancel.
"""

from datetime import date, time
from decimal import Decimal
from uuid import UUID, uuid4

import pytest
from sqlalchemy import delete

from mealbox_kernel.exceptions import SubscriptionGroupNotFoundError
from mealbox_modules.billing.models import InvoiceStatus
from mealbox_modules.credits.models import GlobalCreditSource, GlobalCreditStatus
from mealbox_modules.platform.orm import VendorSlotModel
from mealbox_modules.subscriptions.models import SlotSelection, SubscriptionStatus
from mealbox_services.transitions import AUTO_CANCEL_REASON

from tests.conftest import LUNCH_PRICE, MONDAY, WEEKDAYS

NEXT_MONDAY = date(2026, 1, 12)
OTHER_VENDOR_ID = UUID("00000000-0000-4000-a000-0000000000ff")


class TestRunRenewals:

    def test_due_groups_get_next_cycle_invoice(self, services, make_group):
        first = make_group()
        second = make_group(slots=("lunch", "dinner"))

        result = services.transitions.run_renewals("weekly", NEXT_MONDAY)

        assert result.renewed_count == 2
        assert result.failed == ()
        by_group = {r.group_id: r for r in result.invoices_created}
        assert by_group[first.group.id].net_amount == 5 * LUNCH_PRICE
        assert by_group[first.group.id].period_end == date(2026, 1, 18)
        assert all(r.created for r in result.invoices_created)

        group = services.subscriptions.get_group(second.group.id)
        assert group.renewal_date == date(2026, 1, 19)
        for subscription in services.subscriptions.list_subscriptions(group.id):
            assert subscription.next_cycle_start == date(2026, 1, 19)
            assert subscription.next_cycle_end == date(2026, 1, 25)

    def test_rerun_renews_nothing(self, services, make_group):
        make_group()
        services.transitions.run_renewals("weekly", NEXT_MONDAY)
        again = services.transitions.run_renewals("weekly", NEXT_MONDAY)
        assert again.renewed_count == 0

    def test_skip_counter_reset_and_credits_applied(self, services, make_group):
        checkout = make_group()
        lunch = checkout.subscriptions[0]
        services.subscriptions.skip_meal(lunch.id, date(2026, 1, 6))

        result = services.transitions.run_renewals("weekly", NEXT_MONDAY)

        invoice = services.billing.get_invoice(result.invoices_created[0].invoice_id)
        assert invoice.credits_applied == 1
        assert invoice.net_amount == 4 * LUNCH_PRICE
        assert invoice.status is InvoiceStatus.PENDING
        assert services.subscriptions.get_subscription(lunch.id).skips_used_current_cycle == 0

    def test_only_matching_period_and_active_groups(self, services, make_group):
        make_group(period_type="monthly", start=date(2026, 1, 12))
        paused = make_group()
        services.subscriptions.pause_group(paused.group.id)

        assert services.transitions.due_group_ids("weekly", NEXT_MONDAY) == []
        assert services.transitions.run_renewals("weekly", NEXT_MONDAY).renewed_count == 0

    def test_explicit_ids_not_due_are_passed_over(self, services, make_group):
        checkout = make_group()
        result = services.transitions.run_renewals(
            "weekly", date(2026, 1, 19), group_ids=[checkout.group.id],
        )
        assert result.renewed_count == 0
        assert result.failed == ()

    def test_failing_group_is_isolated(self, services, session, make_group, platform_settings):
        healthy = make_group()
        services.platform.upsert_vendor_slot(OTHER_VENDOR_ID, "lunch", time(12, 30), LUNCH_PRICE)
        broken = services.subscriptions.create_subscription_group(
            consumer_id=uuid4(),
            vendor_id=OTHER_VENDOR_ID,
            period_type="weekly",
            start_date=MONDAY,
            slots=[SlotSelection(slot="lunch", schedule_days=WEEKDAYS)],
        )
        session.execute(delete(VendorSlotModel).where(VendorSlotModel.vendor_id == OTHER_VENDOR_ID))

        result = services.transitions.run_renewals("weekly", NEXT_MONDAY)

        assert [r.group_id for r in result.invoices_created] == [healthy.group.id]
        assert [group_id for group_id, _ in result.failed] == [broken.group.id]
        # nothing of the failed group moved
        assert services.subscriptions.get_group(broken.group.id).renewal_date == NEXT_MONDAY
        assert services.billing.find_invoice(broken.group.id, NEXT_MONDAY) is None


class TestAutoCancelPausedGroup:

    def test_converts_credits_and_cancels(self, services, make_group):
        checkout = make_group()
        lunch = checkout.subscriptions[0]
        services.subscriptions.skip_meal(lunch.id, date(2026, 1, 6))
        services.subscriptions.pause_group(checkout.group.id)

        result = services.transitions.auto_cancel_paused_group(checkout.group.id)

        assert result.credits_converted == 1
        assert result.global_credit_amount == LUNCH_PRICE
        credit = services.credits.get_global_credit(result.global_credit_id)
        assert credit.source_type is GlobalCreditSource.PAUSE_AUTO_CANCEL
        assert credit.status is GlobalCreditStatus.AVAILABLE

        group = services.subscriptions.get_group(checkout.group.id)
        assert group.status is SubscriptionStatus.CANCELLED
        assert group.cancellation_reason == AUTO_CANCEL_REASON
        assert group.paused_at is None

    def test_without_credits_only_cancels(self, services, make_group):
        checkout = make_group()
        services.subscriptions.pause_group(checkout.group.id)
        result = services.transitions.auto_cancel_paused_group(checkout.group.id)
        assert result.global_credit_id is None
        assert result.global_credit_amount == Decimal("0.00")

    def test_active_group_rejected(self, services, make_group):
        checkout = make_group()
        with pytest.raises(ValueError):
            services.transitions.auto_cancel_paused_group(checkout.group.id)
        assert services.subscriptions.get_group(checkout.group.id).status is SubscriptionStatus.ACTIVE

    def test_unknown_group_rejected(self, services, vendor):
        with pytest.raises(SubscriptionGroupNotFoundError):
            services.transitions.auto_cancel_paused_group(uuid4())
