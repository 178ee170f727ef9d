"""Tests for mealbox_services.notifier."""

from uuid import uuid4

from mealbox_services.notifier import (
    LoggingNotifier,
    NotificationEvent,
    Notifier,
    safe_notify,
)

from tests.conftest import ExplodingNotifier, RecordingNotifier


class TestSafeNotify:

    def test_delivers_payload(self):
        notifier = RecordingNotifier()
        consumer_id = uuid4()
        assert safe_notify(notifier, consumer_id, NotificationEvent.PAYMENT_REQUIRED, {"a": 1})
        assert notifier.sent == [(consumer_id, "payment_required", {"a": 1})]

    def test_failure_is_logged_not_raised(self, captured_logs):
        assert not safe_notify(ExplodingNotifier(), uuid4(), NotificationEvent.REFUND_FAILED)
        records = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert records[0]["level"] == "WARNING"
        assert records[0]["event_type"] == "refund_failed"

    def test_no_notifier_is_a_no_op(self):
        assert not safe_notify(None, uuid4(), NotificationEvent.PAYMENT_RETRY)

    def test_logging_notifier_satisfies_protocol(self, captured_logs):
        notifier = LoggingNotifier()
        assert isinstance(notifier, Notifier)
        notifier.notify(uuid4(), NotificationEvent.SUBSCRIPTION_PAUSED, {"group_id": "g"})
        assert any(r["message"] == "notification_sent" for r in captured_logs())


class TestServiceNotifications:

    def test_billing_survives_broken_notifier(self, session, clock, gateway, make_group):
        from mealbox_modules.billing.service import BillingService

        checkout = make_group()
        billing = BillingService(session, clock, gateway=gateway, notifier=ExplodingNotifier())
        attempt = billing.create_manual_payment_order(checkout.invoice_id)
        assert attempt.gateway_order_id == gateway.orders[0].id
