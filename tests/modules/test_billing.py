"""
Tests for mealbox_modules.billing.service.

Invoice construction and proration, manual and mandate payment paths,
signature-verified confirmation and webhooks, retry bookkeeping and
refunds.  The payment gateway is the in-memory FakeGateway.
"""

import json
from datetime import date, timedelta
from decimal import Decimal

import pytest

from mealbox_engines.cycles import cycle_for
from mealbox_kernel.exceptions import (
    ConfigurationError,
    InvalidInvoiceStateError,
    RefundError,
    SignatureVerificationError,
)
from mealbox_modules.billing.models import InvoiceStatus, PaymentMode, RefundStatus
from mealbox_modules.billing.orm import InvoiceModel
from mealbox_modules.billing.service import BillingService
from mealbox_modules.subscriptions.models import MandateStatus, PaymentMethod
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel
from mealbox_services.notifier import NotificationEvent

from tests.conftest import DINNER_PRICE, LUNCH_PRICE

NEXT_MONDAY = date(2026, 1, 12)


def captured_body(invoice, payment_id="pay_hook"):
    return json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "order_id": invoice.gateway_order_id,
            "notes": {"invoice_id": str(invoice.id)},
        }}},
    })


def mandate_kwargs(**overrides):
    kwargs = {
        "payment_method": PaymentMethod.MANDATE,
        "mandate_id": "token_1",
        "mandate_customer_id": "cust_1",
        "mandate_status": MandateStatus.ACTIVE,
    }
    kwargs.update(overrides)
    return kwargs


# =============================================================================
# Invoice construction
# =============================================================================


class TestInvoiceConstruction:

    def test_checkout_invoice_covers_first_week(self, services, make_group):
        checkout = make_group()
        invoice = services.billing.get_invoice(checkout.invoice_id)

        assert invoice.status is InvoiceStatus.PENDING
        assert (invoice.period_start, invoice.period_end) == (date(2026, 1, 5), date(2026, 1, 11))
        assert invoice.due_date == date(2026, 1, 5)
        assert invoice.scheduled_meals == 5
        assert invoice.net_amount == 5 * LUNCH_PRICE
        assert invoice.subscription_ids == (checkout.subscriptions[0].id,)

    def test_midweek_start_is_prorated_per_slot(self, services, make_group):
        checkout = make_group(slots=("lunch", "dinner"), start=date(2026, 1, 7))
        invoice = services.billing.get_invoice(checkout.invoice_id)

        lines = {line.slot: line for line in invoice.line_items}
        assert lines["lunch"].scheduled_meals == 3
        assert lines["dinner"].scheduled_meals == 3
        assert lines["dinner"].line_amount == 3 * DINNER_PRICE
        assert invoice.gross_amount == 3 * LUNCH_PRICE + 3 * DINNER_PRICE
        assert checkout.first_cycle_meals == {"lunch": 3, "dinner": 3}

    def test_one_invoice_per_period(self, services, session, make_group):
        checkout = make_group()
        group = session.get(SubscriptionGroupModel, checkout.group.id)
        cycle = cycle_for(NEXT_MONDAY, "weekly")
        first = services.billing.create_invoice(group, cycle, list(group.subscriptions))
        second = services.billing.create_invoice(group, cycle, list(group.subscriptions))
        assert first.id == second.id
        assert services.billing.find_invoice(group.id, NEXT_MONDAY).id == first.id

    def test_preview_writes_nothing(self, services, make_group):
        checkout = make_group()
        lunch = checkout.subscriptions[0]
        services.credits.create_credit(lunch.id, "lunch", "customer_skip", quantity=2)

        preview = services.billing.calculate_invoice_amount(
            checkout.group.id, cycle_for(NEXT_MONDAY, "weekly"),
        )
        assert preview.scheduled_meals == 5
        assert preview.credits_applied == 2
        assert preview.net_amount == 3 * LUNCH_PRICE
        assert services.credits.get_available_credits(lunch.id, "lunch") == 2
        assert services.billing.find_invoice(checkout.group.id, NEXT_MONDAY) is None


# =============================================================================
# Payment
# =============================================================================


class TestManualPayment:

    def test_manual_order_created_and_customer_notified(self, services, gateway, notifier, make_group):
        checkout = make_group()
        attempt = services.billing.create_manual_payment_order(checkout.invoice_id)

        assert attempt.mode is PaymentMode.MANUAL
        assert gateway.orders[0].amount == 5 * LUNCH_PRICE
        assert gateway.orders[0].receipt.startswith("MB-RENEWAL-")
        assert services.billing.get_invoice(checkout.invoice_id).gateway_order_id == attempt.gateway_order_id
        assert len(notifier.events(NotificationEvent.PAYMENT_REQUIRED)) == 1

    def test_confirm_payment_checks_signature(self, services, make_group):
        checkout = make_group()
        attempt = services.billing.create_manual_payment_order(checkout.invoice_id)
        with pytest.raises(SignatureVerificationError):
            services.billing.confirm_payment(checkout.invoice_id, attempt.gateway_order_id, "pay_1", "bad")

        invoice = services.billing.confirm_payment(
            checkout.invoice_id, attempt.gateway_order_id, "pay_1",
            f"sig:{attempt.gateway_order_id}|pay_1",
        )
        assert invoice.status is InvoiceStatus.PAID
        assert invoice.payment_id == "pay_1"

    def test_no_gateway_is_a_configuration_error(self, session, clock, make_group):
        checkout = make_group()
        billing = BillingService(session, clock)
        with pytest.raises(ConfigurationError):
            billing.create_manual_payment_order(checkout.invoice_id)

    def test_zero_amount_invoice_paid_without_gateway(self, services, session, gateway, make_group):
        checkout = make_group()
        lunch = checkout.subscriptions[0]
        services.credits.create_credit(lunch.id, "lunch", "customer_skip", quantity=5)
        group = session.get(SubscriptionGroupModel, checkout.group.id)
        invoice = services.billing.create_invoice(
            group, cycle_for(NEXT_MONDAY, "weekly"), list(group.subscriptions),
        )

        attempt = services.billing.auto_charge_invoice(invoice.id)

        assert attempt.mode is PaymentMode.ZERO_AMOUNT
        assert services.billing.get_invoice(invoice.id).status is InvoiceStatus.PAID
        assert gateway.orders == []


class TestMandatePayment:

    def test_usable_mandate_is_charged(self, services, gateway, make_group):
        checkout = make_group(**mandate_kwargs())
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mode is PaymentMode.MANDATE
        assert attempt.payment_id == "pay_m1"
        assert gateway.charges[0]["mandate_id"] == "token_1"
        # the captured webhook settles it
        assert services.billing.get_invoice(checkout.invoice_id).status is InvoiceStatus.PENDING

    def test_expired_mandate_falls_back_to_manual(self, services, clock, notifier, make_group):
        checkout = make_group(**mandate_kwargs(mandate_expires_at=clock.now() - timedelta(days=1)))
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mode is PaymentMode.MANUAL
        assert attempt.mandate_failed
        group = services.subscriptions.get_group(checkout.group.id)
        assert group.payment_method is PaymentMethod.MANUAL
        assert group.mandate_status is MandateStatus.EXPIRED
        assert len(notifier.events(NotificationEvent.MANDATE_FAILED)) == 1

    def test_rejected_charge_falls_back_to_manual(self, services, gateway, make_group):
        gateway.fail_mandate = True
        checkout = make_group(**mandate_kwargs())
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mode is PaymentMode.MANUAL
        assert attempt.mandate_failed
        assert "mandate rejected" in attempt.error
        assert services.subscriptions.get_group(checkout.group.id).mandate_status is MandateStatus.FAILED

    def test_inactive_stored_mandate_fails_over(self, services, gateway, notifier, make_group):
        checkout = make_group(**mandate_kwargs(mandate_status=MandateStatus.PENDING))
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mode is PaymentMode.MANUAL
        assert attempt.mandate_failed
        assert attempt.error == "mandate status pending"
        assert gateway.charges == []
        assert gateway.mandate_lookups == []
        group = services.subscriptions.get_group(checkout.group.id)
        assert group.payment_method is PaymentMethod.MANUAL
        assert group.mandate_status is MandateStatus.FAILED
        assert len(notifier.events(NotificationEvent.MANDATE_FAILED)) == 1

    def test_live_status_checked_before_charging(self, services, gateway, make_group):
        checkout = make_group(**mandate_kwargs())
        services.billing.auto_charge_invoice(checkout.invoice_id)
        assert gateway.mandate_lookups == ["token_1"]
        assert len(gateway.charges) == 1

    def test_cancelled_at_gateway_fails_over(self, services, gateway, notifier, make_group):
        gateway.mandate_status = "cancelled"
        checkout = make_group(**mandate_kwargs())
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mandate_failed
        assert attempt.mode is PaymentMode.MANUAL
        assert gateway.charges == []
        group = services.subscriptions.get_group(checkout.group.id)
        assert group.payment_method is PaymentMethod.MANUAL
        assert group.mandate_status is MandateStatus.CANCELLED
        assert len(notifier.events(NotificationEvent.MANDATE_FAILED)) == 1

    def test_failed_status_lookup_fails_over(self, services, gateway, notifier, make_group):
        gateway.fail_mandate_lookup = True
        checkout = make_group(**mandate_kwargs())
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mandate_failed
        assert attempt.error.startswith("mandate status check failed")
        assert gateway.charges == []
        assert services.subscriptions.get_group(checkout.group.id).mandate_status is MandateStatus.FAILED
        assert len(notifier.events(NotificationEvent.PAYMENT_REQUIRED)) == 1

    def test_missing_customer_id_fails_over(self, services, gateway, make_group):
        checkout = make_group(**mandate_kwargs(mandate_customer_id=None))
        attempt = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert attempt.mandate_failed
        assert attempt.error == "mandate details missing"
        assert gateway.charges == []

    def test_charge_uses_invoice_currency(self, services, session, gateway, make_group):
        checkout = make_group(**mandate_kwargs())
        session.get(InvoiceModel, checkout.invoice_id).currency = "USD"
        session.flush()
        services.billing.auto_charge_invoice(checkout.invoice_id)

        assert gateway.charges[0]["currency"] == "USD"
        assert gateway.orders[0].currency == "USD"

    def test_submitted_invoice_is_not_charged_again(self, services, gateway, make_group):
        checkout = make_group(**mandate_kwargs())
        first = services.billing.auto_charge_invoice(checkout.invoice_id)
        again = services.billing.auto_charge_invoice(checkout.invoice_id)

        assert len(gateway.charges) == 1
        assert again.already_submitted
        assert again.mode is PaymentMode.MANDATE
        assert again.gateway_order_id == first.gateway_order_id

    def test_receipt_is_stable_per_cycle(self, services, gateway, make_group):
        checkout = make_group()
        invoice = services.billing.get_invoice(checkout.invoice_id)
        services.billing.create_manual_payment_order(invoice.id)

        expected = (
            f"MB-RENEWAL-{checkout.group.id.hex[:12]}"
            f"-{invoice.period_start:%Y%m%d}-0"
        )
        assert gateway.orders[0].receipt == expected


class TestWebhooks:

    def test_payment_captured_marks_paid_once(self, services, make_group):
        checkout = make_group()
        services.billing.create_manual_payment_order(checkout.invoice_id)
        invoice = services.billing.get_invoice(checkout.invoice_id)

        first = services.billing.handle_payment_webhook(captured_body(invoice), "sig:webhook")
        second = services.billing.handle_payment_webhook(captured_body(invoice), "sig:webhook")

        assert (first.handled, first.detail) == (True, "paid")
        assert second.detail == "already paid"
        assert services.billing.get_invoice(invoice.id).payment_id == "pay_hook"

    def test_bad_signature_rejected(self, services, make_group):
        checkout = make_group()
        invoice = services.billing.get_invoice(checkout.invoice_id)
        with pytest.raises(SignatureVerificationError):
            services.billing.handle_payment_webhook(captured_body(invoice), "forged")

    def test_unknown_event_ignored(self, services, vendor):
        outcome = services.billing.handle_payment_webhook(
            json.dumps({"event": "order.paid", "payload": {}}), "sig:webhook",
        )
        assert not outcome.handled
        assert outcome.detail == "ignored"


class TestRetryBookkeeping:

    def test_retry_bumps_counter_and_reorders(self, services, clock, gateway, notifier, make_group):
        checkout = make_group()
        attempt = services.billing.retry_payment(checkout.invoice_id)
        invoice = services.billing.get_invoice(checkout.invoice_id)

        assert invoice.retry_count == 1
        assert invoice.last_retry_at == clock.now()
        assert attempt.gateway_order_id == gateway.orders[-1].id
        assert gateway.orders[-1].receipt.endswith("-1")
        assert len(notifier.events(NotificationEvent.PAYMENT_RETRY)) == 1

    def test_failed_invoice_cannot_be_retried(self, services, make_group):
        checkout = make_group()
        services.billing.mark_invoice_failed(checkout.invoice_id)
        with pytest.raises(InvalidInvoiceStateError):
            services.billing.retry_payment(checkout.invoice_id)


# =============================================================================
# Refunds
# =============================================================================


class TestRefunds:

    def test_partial_refund_pending_until_webhook(self, services, gateway, paid_group):
        checkout = paid_group()
        invoice = services.billing.process_refund(checkout.invoice_id, Decimal("200.00"))

        assert invoice.refund_status is RefundStatus.PENDING
        assert invoice.refund_amount == Decimal("200.00")
        assert gateway.refunds[0].amount == Decimal("200.00")

        outcome = services.billing.handle_refund_webhook(invoice.refund_id, RefundStatus.PROCESSED)
        assert outcome.detail == "processed"
        again = services.billing.handle_refund_webhook(invoice.refund_id, "processed")
        assert again.detail == "unchanged"
        assert services.billing.get_invoice(invoice.id).refunded_at is not None

    def test_refund_above_net_rejected(self, services, paid_group):
        checkout = paid_group()
        with pytest.raises(RefundError):
            services.billing.process_refund(checkout.invoice_id, Decimal("500.01"))

    def test_unpaid_invoice_not_refundable(self, services, make_group):
        checkout = make_group()
        with pytest.raises(RefundError):
            services.billing.process_refund(checkout.invoice_id)

    def test_gateway_failure_recorded_then_retried(self, services, gateway, notifier, paid_group):
        checkout = paid_group()
        gateway.fail_refund = True
        failed = services.billing.process_refund(checkout.invoice_id)
        assert failed.refund_status is RefundStatus.FAILED
        assert len(notifier.events(NotificationEvent.REFUND_FAILED)) == 1

        gateway.fail_refund = False
        retried = services.billing.retry_failed_refund(checkout.invoice_id)
        assert retried.refund_status is RefundStatus.PENDING
        assert gateway.refunds[0].amount == 5 * LUNCH_PRICE

    def test_double_refund_rejected(self, services, paid_group):
        checkout = paid_group()
        services.billing.process_refund(checkout.invoice_id)
        with pytest.raises(RefundError):
            services.billing.process_refund(checkout.invoice_id)
