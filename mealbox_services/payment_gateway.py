"""
PaymentGateway -- order creation, mandate charges, refunds, signatures.

Responsibility:
    Defines the ``PaymentGateway`` protocol consumed by the Billing
    Service and provides ``RazorpayGateway``, a synchronous ``httpx``
    client for the hosted gateway's REST API.

Architecture position:
    Services -- external collaborator.  Always injected; domain code never
    constructs a gateway itself.

Invariants enforced:
    - Amounts cross the wire in the smallest currency unit (paise):
      ``round(amount * 100)`` half-up.
    - Signatures are HMAC-SHA256 hex digests compared in constant time.
    - Requests answered with 429/5xx, and transport errors, are retried
      with exponential backoff up to ``max_retries`` attempts.  Mandate
      charges and refunds are retried only on 429 or a failed connect; any
      other failure surfaces at once so a processed payment is never sent
      twice.

Failure modes:
    - PaymentGatewayError for any non-success response or exhausted retry
      loop; carries ``operation``, ``status_code`` and the gateway's error
      code.
    - ConfigurationError when the client is built without API keys.

Usage:
    gateway = RazorpayGateway(get_active_config().gateway)
    order = gateway.create_order(Decimal("480.00"), "INR", "MB-RENEWAL-...", {})
"""

from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Protocol, runtime_checkable

import httpx

from mealbox_config.schema import GatewaySettings
from mealbox_kernel.exceptions import ConfigurationError, PaymentGatewayError
from mealbox_kernel.logging_config import get_logger

logger = get_logger("services.payment_gateway")

RETRY_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
# a rate-limited request, or one that never left the client, was not acted on
NOT_PROCESSED_STATUS_CODES = frozenset({429})
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


# =============================================================================
# Gateway value objects
# =============================================================================


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: Decimal
    currency: str
    receipt: str
    status: str = "created"
    notes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MandateCharge:
    payment_id: str
    status: str = "created"


@dataclass(frozen=True)
class MandateInfo:
    status: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_id: str
    amount: Decimal
    status: str


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise, rounded half-up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int | None) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(Decimal("0.01"))


def compute_signature(secret: str, payload: str | bytes) -> str:
    """Hex HMAC-SHA256 of ``payload`` under ``secret``."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class PaymentGateway(Protocol):
    """What billing needs from a payment gateway."""

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder: ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool: ...

    def verify_webhook_signature(self, payload: bytes | str, signature: str) -> bool: ...

    def charge_via_mandate(
        self,
        mandate_id: str,
        order_id: str,
        amount: Decimal,
        customer_id: str,
        currency: str = "INR",
    ) -> MandateCharge: ...

    def get_mandate_status(self, mandate_id: str) -> MandateInfo: ...

    def create_refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        notes: dict[str, str] | None = None,
    ) -> GatewayRefund: ...


# =============================================================================
# Razorpay over httpx
# =============================================================================


class RazorpayGateway:
    """
    Synchronous Razorpay REST client.

    ``client`` and ``sleep`` are injectable so tests can drive the retry
    loop with ``httpx.MockTransport`` and without real delays.
    """

    def __init__(
        self,
        settings: GatewaySettings,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not settings.is_configured:
            raise ConfigurationError("Payment gateway API keys are not configured")
        self._settings = settings
        self._sleep = sleep
        self._client = client or httpx.Client(
            base_url=settings.base_url,
            auth=(settings.key_id, settings.key_secret),
            timeout=httpx.Timeout(settings.timeout_seconds),
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return self._settings.backoff_factor * (2 ** (attempt - 1))

    def _request_with_retry(
        self, method: str, path: str, operation: str, replayable: bool = True, **kwargs: Any,
    ) -> httpx.Response:
        """Send a request, retrying with exponential backoff.

        ``replayable=False`` marks calls that move money.  Those are only
        retried when the gateway cannot have acted on them: the connection
        never opened, or the request was rate limited.
        """
        max_retries = max(1, self._settings.max_retries)
        retry_codes = RETRY_STATUS_CODES if replayable else NOT_PROCESSED_STATUS_CODES
        for attempt in range(1, max_retries + 1):
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.RequestError as exc:
                if not replayable and not isinstance(exc, NOT_SENT_ERRORS):
                    logger.error("gateway_outcome_unknown", extra={
                        "operation": operation,
                        "error": str(exc),
                    })
                    raise PaymentGatewayError(
                        operation, f"transport error, outcome unknown: {exc}",
                    ) from exc
                if attempt >= max_retries:
                    raise PaymentGatewayError(operation, f"transport error: {exc}") from exc
                logger.warning("gateway_request_error_retrying", extra={
                    "operation": operation,
                    "attempt": attempt,
                    "error": str(exc),
                    "backoff_seconds": self._backoff(attempt),
                })
                self._sleep(self._backoff(attempt))
                continue

            if response.status_code in retry_codes and attempt < max_retries:
                logger.warning("gateway_retrying_request", extra={
                    "operation": operation,
                    "attempt": attempt,
                    "status_code": response.status_code,
                    "backoff_seconds": self._backoff(attempt),
                })
                self._sleep(self._backoff(attempt))
                continue
            return response
        raise PaymentGatewayError(operation, "retry loop exhausted")

    def _handle_response(self, response: httpx.Response, operation: str) -> dict:
        if response.is_success:
            try:
                return response.json() if response.content else {}
            except ValueError as exc:
                raise PaymentGatewayError(
                    operation, f"invalid response body: {exc}", status_code=response.status_code,
                ) from exc

        error_code = None
        description = f"HTTP {response.status_code}"
        try:
            error = (response.json() or {}).get("error", {})
            error_code = error.get("code")
            description = error.get("description") or description
        except ValueError:
            pass

        logger.error("gateway_request_failed", extra={
            "operation": operation,
            "status_code": response.status_code,
            "error_code": error_code,
            "description": description,
        })
        raise PaymentGatewayError(
            operation, description, status_code=response.status_code, error_code=error_code,
        )

    def _call(
        self, method: str, path: str, operation: str, replayable: bool = True, **kwargs: Any,
    ) -> dict:
        response = self._request_with_retry(method, path, operation, replayable, **kwargs)
        return self._handle_response(response, operation)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> GatewayOrder:
        data = self._call("POST", "/orders", "create_order", json={
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        })
        logger.info("gateway_order_created", extra={
            "gateway_order_id": data.get("id"),
            "receipt": receipt,
            "amount": str(amount),
        })
        return GatewayOrder(
            id=data["id"],
            amount=from_minor_units(data.get("amount")),
            currency=data.get("currency", currency),
            receipt=data.get("receipt", receipt),
            status=data.get("status", "created"),
            notes=dict(data.get("notes") or {}),
        )

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        expected = compute_signature(self._settings.key_secret, f"{order_id}|{payment_id}")
        return hmac.compare_digest(expected, signature or "")

    def verify_webhook_signature(self, payload: bytes | str, signature: str) -> bool:
        if not self._settings.webhook_secret:
            raise ConfigurationError("Webhook secret is not configured")
        expected = compute_signature(self._settings.webhook_secret, payload)
        return hmac.compare_digest(expected, signature or "")

    def charge_via_mandate(
        self,
        mandate_id: str,
        order_id: str,
        amount: Decimal,
        customer_id: str,
        currency: str = "INR",
    ) -> MandateCharge:
        body = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "order_id": order_id,
            "customer_id": customer_id,
            "token": mandate_id,
            "recurring": "1",
        }
        data = self._call(
            "POST", "/payments/create/recurring", "charge_via_mandate", replayable=False, json=body,
        )
        payment_id = data.get("razorpay_payment_id") or data.get("id")
        if not payment_id:
            raise PaymentGatewayError("charge_via_mandate", "response carried no payment id")
        return MandateCharge(payment_id=payment_id, status=data.get("status", "created"))

    def get_mandate_status(self, mandate_id: str) -> MandateInfo:
        data = self._call(
            "GET", "/subscriptions", "get_mandate_status", params={"count": 100},
        )
        for item in data.get("items", []):
            if item.get("mandate_id") == mandate_id or item.get("token") == mandate_id:
                end_at = item.get("end_at")
                return MandateInfo(
                    status=item.get("status", "unknown"),
                    expires_at=(
                        datetime.fromtimestamp(end_at, tz=timezone.utc) if end_at else None
                    ),
                )
        raise PaymentGatewayError("get_mandate_status", f"mandate {mandate_id} not found")

    def create_refund(
        self,
        payment_id: str,
        amount: Decimal | None = None,
        notes: dict[str, str] | None = None,
    ) -> GatewayRefund:
        body: dict[str, Any] = {"notes": notes or {}}
        if amount is not None:
            body["amount"] = to_minor_units(amount)
        data = self._call(
            "POST", f"/payments/{payment_id}/refund", "create_refund", replayable=False, json=body,
        )
        logger.info("gateway_refund_created", extra={
            "refund_id": data.get("id"),
            "payment_id": payment_id,
            "status": data.get("status"),
        })
        return GatewayRefund(
            id=data["id"],
            payment_id=data.get("payment_id", payment_id),
            amount=from_minor_units(data.get("amount")),
            status=data.get("status", "pending"),
        )
