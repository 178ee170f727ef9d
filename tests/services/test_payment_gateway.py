"""
Tests for mealbox_services.payment_gateway -- the Razorpay httpx client.

Requests are served by httpx.MockTransport; backoff sleeps are recorded
instead of slept.
"""

import json
from decimal import Decimal

import httpx
import pytest

from mealbox_config.schema import GatewaySettings
from mealbox_kernel.exceptions import ConfigurationError, PaymentGatewayError
from mealbox_services.payment_gateway import (
    PaymentGateway,
    RazorpayGateway,
    compute_signature,
    from_minor_units,
    to_minor_units,
)

SETTINGS = GatewaySettings(
    base_url="https://gateway.test/v1",
    key_id="rzp_test_key",
    key_secret="secret",
    webhook_secret="whsec",
    max_retries=3,
    backoff_factor=0.5,
)


def make_gateway(handler, settings=SETTINGS):
    sleeps: list[float] = []
    client = httpx.Client(
        base_url=settings.base_url,
        transport=httpx.MockTransport(handler),
    )
    return RazorpayGateway(settings, client=client, sleep=sleeps.append), sleeps


class TestMinorUnits:

    def test_rupees_to_paise(self):
        assert to_minor_units(Decimal("480.00")) == 48000
        assert to_minor_units(Decimal("0.005")) == 1

    def test_paise_to_rupees(self):
        assert from_minor_units(48050) == Decimal("480.50")
        assert from_minor_units(None) == Decimal("0.00")


class TestRequests:

    def test_create_order_posts_minor_units(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "id": "order_abc", "amount": 48000, "currency": "INR",
                "receipt": "MB-1", "status": "created", "notes": {"kind": "renewal"},
            })

        gateway, _ = make_gateway(handler)
        order = gateway.create_order(Decimal("480.00"), "INR", "MB-1", {"kind": "renewal"})

        assert seen["path"] == "/v1/orders"
        assert seen["body"]["amount"] == 48000
        assert order.id == "order_abc"
        assert order.amount == Decimal("480.00")
        assert isinstance(gateway, PaymentGateway)

    def test_retries_service_unavailable_with_backoff(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"id": "order_2", "amount": 10000, "currency": "INR"})

        gateway, sleeps = make_gateway(handler)
        order = gateway.create_order(Decimal("100.00"), "INR", "MB-2")

        assert len(calls) == 3
        assert sleeps == [0.5, 1.0]
        assert order.id == "order_2"
        assert order.receipt == "MB-2"

    def test_exhausted_retries_raise(self):
        gateway, sleeps = make_gateway(lambda request: httpx.Response(502))
        with pytest.raises(PaymentGatewayError) as exc_info:
            gateway.create_order(Decimal("1"), "INR", "r")
        assert exc_info.value.status_code == 502
        assert len(sleeps) == 2

    def test_transport_error_retried_then_raised(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway, sleeps = make_gateway(handler)
        with pytest.raises(PaymentGatewayError, match="transport error"):
            gateway.create_order(Decimal("1"), "INR", "r")
        assert len(sleeps) == 2

    def test_client_error_maps_gateway_code(self):
        def handler(request):
            return httpx.Response(400, json={"error": {
                "code": "BAD_REQUEST_ERROR", "description": "token expired",
            }})

        gateway, sleeps = make_gateway(handler)
        with pytest.raises(PaymentGatewayError) as exc_info:
            gateway.charge_via_mandate("token_1", "order_1", Decimal("10"), "cust_1")

        assert exc_info.value.error_code == "BAD_REQUEST_ERROR"
        assert exc_info.value.reason == "token expired"
        assert sleeps == []

    def test_mandate_status_lookup(self):
        def handler(request):
            return httpx.Response(200, json={"items": [
                {"token": "token_1", "status": "active", "end_at": 1798761600},
            ]})

        gateway, _ = make_gateway(handler)
        info = gateway.get_mandate_status("token_1")
        assert info.status == "active"
        assert info.expires_at.year == 2027

        with pytest.raises(PaymentGatewayError):
            gateway.get_mandate_status("token_unknown")


class TestMoneyMovingCalls:

    def test_mandate_charge_not_replayed_after_server_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(502)

        gateway, sleeps = make_gateway(handler)
        with pytest.raises(PaymentGatewayError) as exc_info:
            gateway.charge_via_mandate("token_1", "order_1", Decimal("480.00"), "cust_1")

        assert len(calls) == 1
        assert sleeps == []
        assert exc_info.value.status_code == 502

    def test_refund_not_replayed_after_read_timeout(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("no answer", request=request)

        gateway, sleeps = make_gateway(handler)
        with pytest.raises(PaymentGatewayError, match="outcome unknown"):
            gateway.create_refund("pay_1", Decimal("100.00"))

        assert len(calls) == 1
        assert sleeps == []

    def test_mandate_charge_retried_when_rate_limited(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(429)
            return httpx.Response(200, json={"razorpay_payment_id": "pay_9"})

        gateway, sleeps = make_gateway(handler)
        charge = gateway.charge_via_mandate("token_1", "order_1", Decimal("10"), "cust_1")

        assert charge.payment_id == "pay_9"
        assert len(calls) == 2
        assert sleeps == [0.5]

    def test_refund_retried_when_connection_refused(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"id": "rfnd_1", "amount": 10000, "status": "processed"})

        gateway, _ = make_gateway(handler)
        refund = gateway.create_refund("pay_1", Decimal("100.00"))

        assert refund.status == "processed"
        assert len(calls) == 2

    def test_mandate_charge_sends_given_currency(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return httpx.Response(200, json={"id": "pay_1"})

        gateway, _ = make_gateway(handler)
        gateway.charge_via_mandate("token_1", "order_1", Decimal("12.50"), "cust_1", currency="USD")

        assert seen["currency"] == "USD"
        assert seen["amount"] == 1250
        assert seen["recurring"] == "1"


class TestSignatures:

    def test_checkout_signature(self):
        gateway, _ = make_gateway(lambda request: httpx.Response(200))
        signature = compute_signature("secret", "order_1|pay_1")
        assert gateway.verify_signature("order_1", "pay_1", signature)
        assert not gateway.verify_signature("order_1", "pay_2", signature)
        assert not gateway.verify_signature("order_1", "pay_1", None)

    def test_webhook_signature(self):
        gateway, _ = make_gateway(lambda request: httpx.Response(200))
        body = b'{"event":"payment.captured"}'
        assert gateway.verify_webhook_signature(body, compute_signature("whsec", body))
        assert not gateway.verify_webhook_signature(body, compute_signature("secret", body))

    def test_webhook_secret_required(self):
        settings = GatewaySettings(key_id="k", key_secret="s")
        gateway, _ = make_gateway(lambda request: httpx.Response(200), settings=settings)
        with pytest.raises(ConfigurationError):
            gateway.verify_webhook_signature(b"{}", "sig")

    def test_keys_required(self):
        with pytest.raises(ConfigurationError):
            RazorpayGateway(GatewaySettings())
