"""
Billing Service - invoices, payment linkage and refunds.

Thin glue layer that:
1. Calls the cycle engine to count scheduled meals per slot
2. Calls CreditService to apply credits FIFO to each new invoice
3. Calls the PaymentGateway to create orders, charge mandates and refund
4. Calls the Notifier (fire-and-forget) when the customer must act

Invariants enforced:
    - One invoice per (group, period_start); creating it again returns the
      existing invoice unchanged.
    - Zero-amount invoices are marked paid without touching the gateway.
    - Payment confirmation and webhooks are idempotent: a paid invoice
      stays paid and is never re-stamped.
    - Every signature is verified before any state changes.

Failure modes:
    - InvoiceNotFoundError / InvalidInvoiceStateError for bad targets.
    - SignatureVerificationError for forged confirmations or webhooks.
    - RefundError when a refund is not possible in the invoice's state.
    - PaymentGatewayError escapes only from ``create_manual_payment_order``;
      mandate and refund failures become state changes instead.

The service flushes but never commits; the caller owns the transaction.

Usage:
    billing = BillingService(session, clock, gateway=gateway, notifier=notifier)
    invoice = billing.create_invoice(group, cycle, group.subscriptions)
    attempt = billing.auto_charge_invoice(invoice.id)
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealbox_engines.cycles import Cycle, calculate_cycle_amount, count_scheduled_meals
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import (
    ConfigurationError,
    InvalidInvoiceStateError,
    InvoiceNotFoundError,
    PaymentGatewayError,
    RefundError,
    SignatureVerificationError,
    SubscriptionGroupNotFoundError,
)
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.models import (
    Invoice,
    InvoiceAmountPreview,
    InvoiceStatus,
    LinePreview,
    PaymentAttempt,
    PaymentMode,
    RefundStatus,
    WebhookOutcome,
)
from mealbox_modules.billing.orm import InvoiceLineItemModel, InvoiceModel
from mealbox_modules.credits.models import GlobalCredit, GlobalCreditStatus
from mealbox_modules.credits.service import CreditService
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.models import MandateStatus, PaymentMethod
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel, SubscriptionModel
from mealbox_services.notifier import NotificationEvent, Notifier, safe_notify
from mealbox_services.payment_gateway import PaymentGateway

logger = get_logger("modules.billing.service")


def _mandate_status(value: str | None) -> MandateStatus:
    """Map a stored or gateway mandate status onto ours; unknown means failed."""
    if value in (MandateStatus.EXPIRED.value, MandateStatus.CANCELLED.value):
        return MandateStatus(value)
    return MandateStatus.FAILED


class BillingService:
    """
    Builds cycle invoices and links them to gateway payments.

    Collaborators:
    - CreditService: FIFO credit application, refund credit settlement
    - PlatformService: slot prices
    - PaymentGateway: orders, mandate charges, refunds (optional; only the
      payment paths need it)
    - Notifier: payment-required and failure notices
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        credits: CreditService | None = None,
        platform: PlatformService | None = None,
        currency: str = "INR",
        receipt_prefix: str = "MB",
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._gateway = gateway
        self._notifier = notifier
        self._platform = platform or PlatformService(session, self._clock)
        self._credits = credits or CreditService(session, self._clock, self._platform)
        self._currency = currency
        self._receipt_prefix = receipt_prefix

    # =========================================================================
    # Lookups
    # =========================================================================

    def _invoice_row(self, invoice_id: UUID) -> InvoiceModel:
        invoice = self._session.get(InvoiceModel, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _group_row(self, group_id: UUID) -> SubscriptionGroupModel:
        group = self._session.get(SubscriptionGroupModel, group_id)
        if group is None:
            raise SubscriptionGroupNotFoundError(str(group_id))
        return group

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        return self._invoice_row(invoice_id).to_dto()

    def find_invoice(self, group_id: UUID, period_start: date) -> Invoice | None:
        row = self._session.execute(
            select(InvoiceModel).where(
                InvoiceModel.group_id == group_id,
                InvoiceModel.period_start == period_start,
            )
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def _require_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            raise ConfigurationError("No payment gateway configured for billing")
        return self._gateway

    # =========================================================================
    # Invoice construction
    # =========================================================================

    @staticmethod
    def _billing_start(
        cycle: Cycle, subscription: SubscriptionModel, prorate_from: date | None,
    ) -> date:
        start = cycle.cycle_start
        if prorate_from is not None and prorate_from > start:
            start = prorate_from
        if subscription.start_date > start:
            start = subscription.start_date
        return start

    def _price_lines(
        self,
        group: SubscriptionGroupModel,
        cycle: Cycle,
        subscriptions: Sequence[SubscriptionModel],
        prorate_from: date | None,
    ) -> list[tuple[SubscriptionModel, int, Decimal]]:
        lines = []
        for subscription in subscriptions:
            start = self._billing_start(cycle, subscription, prorate_from)
            meals = count_scheduled_meals(start, cycle.cycle_end, subscription.schedule_days)
            price = self._platform.get_vendor_slot(
                group.vendor_id, subscription.slot,
            ).base_price_per_meal
            lines.append((subscription, meals, price))
        return lines

    def create_invoice(
        self,
        group: SubscriptionGroupModel,
        cycle: Cycle,
        subscriptions: Sequence[SubscriptionModel],
        prorate_from: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        """
        Invoice one cycle of a group, then apply credits FIFO.

        Each subscription contributes a line of its scheduled meals between
        ``max(cycle_start, prorate_from, subscription.start_date)`` and
        ``cycle_end`` at the vendor's slot price.  The due date is the first
        billed day.
        """
        existing = self._session.execute(
            select(InvoiceModel).where(
                InvoiceModel.group_id == group.id,
                InvoiceModel.period_start == cycle.cycle_start,
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("invoice_already_exists", extra={
                "invoice_id": str(existing.id),
                "group_id": str(group.id),
                "period_start": cycle.cycle_start.isoformat(),
            })
            return existing.to_dto()

        now = self._clock.now()
        invoice = InvoiceModel(
            group_id=group.id,
            consumer_id=group.consumer_id,
            vendor_id=group.vendor_id,
            period_type=group.period_type,
            period_start=cycle.cycle_start,
            period_end=cycle.cycle_end,
            due_date=max(cycle.cycle_start, prorate_from or cycle.cycle_start),
            subscription_ids=[str(s.id) for s in subscriptions],
            discount_amount=Decimal("0"),
            currency=self._currency,
            status=InvoiceStatus.PENDING.value,
            retry_count=0,
            created_at=now,
            created_by_id=actor_id,
        )
        for subscription, meals, price in self._price_lines(
            group, cycle, subscriptions, prorate_from,
        ):
            invoice.line_items.append(InvoiceLineItemModel(
                subscription_id=subscription.id,
                slot=subscription.slot,
                scheduled_meals=meals,
                credits_applied=0,
                billable_meals=meals,
                price_per_meal=price,
                line_amount=calculate_cycle_amount(meals, price),
                created_at=now,
                created_by_id=actor_id,
            ))
        invoice.recalculate_totals()
        self._session.add(invoice)
        self._session.flush()

        logger.info("invoice_created", extra={
            "invoice_id": str(invoice.id),
            "group_id": str(group.id),
            "period_start": cycle.cycle_start.isoformat(),
            "period_end": cycle.cycle_end.isoformat(),
            "scheduled_meals": invoice.scheduled_meals,
            "gross_amount": str(invoice.gross_amount),
        })

        self._credits.apply_credits_to_invoice(invoice.id, actor_id=actor_id)
        return invoice.to_dto()

    def calculate_invoice_amount(
        self,
        group_id: UUID,
        cycle: Cycle,
        prorate_from: date | None = None,
    ) -> InvoiceAmountPreview:
        """What ``create_invoice`` would bill for the cycle; writes nothing."""
        group = self._group_row(group_id)
        active = [s for s in group.subscriptions if s.status == "active"]
        lines: list[LinePreview] = []
        for subscription, meals, price in self._price_lines(group, cycle, active, prorate_from):
            available = self._credits.get_available_credits(subscription.id, subscription.slot)
            applied = min(meals, available)
            billable = meals - applied
            lines.append(LinePreview(
                subscription_id=subscription.id,
                slot=subscription.slot,
                scheduled_meals=meals,
                credits_available=available,
                credits_applied=applied,
                billable_meals=billable,
                price_per_meal=price,
                line_amount=calculate_cycle_amount(billable, price),
            ))
        gross = sum((line.line_amount for line in lines), Decimal("0.00"))
        return InvoiceAmountPreview(
            period_start=cycle.cycle_start,
            period_end=cycle.cycle_end,
            scheduled_meals=sum(line.scheduled_meals for line in lines),
            credits_applied=sum(line.credits_applied for line in lines),
            billable_meals=sum(line.billable_meals for line in lines),
            gross_amount=gross,
            net_amount=gross,
            lines=tuple(lines),
        )

    # =========================================================================
    # Payment
    # =========================================================================

    def _receipt(self, invoice: InvoiceModel) -> str:
        # one receipt per cycle and attempt, stable across reruns
        return (
            f"{self._receipt_prefix}-RENEWAL-{invoice.group_id.hex[:12]}"
            f"-{invoice.period_start:%Y%m%d}-{invoice.retry_count}"
        )

    def _mark_zero_amount_paid(self, invoice: InvoiceModel, actor_id: UUID) -> PaymentAttempt:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = self._clock.now()
        invoice.updated_by_id = actor_id
        self._session.flush()
        logger.info("invoice_paid_by_credit", extra={
            "invoice_id": str(invoice.id),
            "credits_applied": invoice.credits_applied,
        })
        return PaymentAttempt(invoice_id=invoice.id, mode=PaymentMode.ZERO_AMOUNT)

    def _require_pending(self, invoice: InvoiceModel, operation: str) -> None:
        if invoice.status != InvoiceStatus.PENDING.value:
            raise InvalidInvoiceStateError(str(invoice.id), invoice.status, operation)

    def create_manual_payment_order(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
        kind: str = "renewal",
    ) -> PaymentAttempt:
        """Create a gateway order the customer pays by hand, and tell them."""
        invoice = self._invoice_row(invoice_id)
        self._require_pending(invoice, "create_manual_payment_order")
        if invoice.net_amount <= 0:
            return self._mark_zero_amount_paid(invoice, actor_id)

        order = self._require_gateway().create_order(
            invoice.net_amount,
            invoice.currency,
            self._receipt(invoice),
            {
                "invoice_id": str(invoice.id),
                "group_id": str(invoice.group_id),
                "consumer_id": str(invoice.consumer_id),
                "kind": kind,
            },
        )
        invoice.gateway_order_id = order.id
        invoice.updated_by_id = actor_id
        self._session.flush()

        logger.info("manual_payment_order_created", extra={
            "invoice_id": str(invoice.id),
            "gateway_order_id": order.id,
            "net_amount": str(invoice.net_amount),
        })
        safe_notify(self._notifier, invoice.consumer_id, NotificationEvent.PAYMENT_REQUIRED, {
            "invoice_id": str(invoice.id),
            "gateway_order_id": order.id,
            "amount": str(invoice.net_amount),
            "currency": invoice.currency,
        })
        return PaymentAttempt(
            invoice_id=invoice.id, mode=PaymentMode.MANUAL, gateway_order_id=order.id,
        )

    def handle_mandate_failure(
        self,
        group_id: UUID,
        reason: str,
        mandate_status: MandateStatus = MandateStatus.FAILED,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> None:
        """Drop a group back to manual payment after its mandate failed."""
        group = self._group_row(group_id)
        group.payment_method = PaymentMethod.MANUAL.value
        group.mandate_status = mandate_status.value
        group.updated_by_id = actor_id
        self._session.flush()

        logger.warning("mandate_failed", extra={
            "group_id": str(group_id),
            "mandate_status": mandate_status.value,
            "reason": reason,
        })
        safe_notify(self._notifier, group.consumer_id, NotificationEvent.MANDATE_FAILED, {
            "group_id": str(group_id),
            "reason": reason,
        })

    def _fall_back_to_manual(
        self,
        invoice: InvoiceModel,
        group: SubscriptionGroupModel,
        reason: str,
        mandate_status: MandateStatus,
        actor_id: UUID,
    ) -> PaymentAttempt:
        self.handle_mandate_failure(group.id, reason, mandate_status, actor_id=actor_id)
        attempt = self.create_manual_payment_order(invoice.id, actor_id=actor_id)
        return PaymentAttempt(
            invoice_id=invoice.id,
            mode=attempt.mode,
            gateway_order_id=attempt.gateway_order_id,
            mandate_failed=True,
            error=reason,
        )

    def _mandate_problem(
        self, group: SubscriptionGroupModel, gateway: PaymentGateway,
    ) -> tuple[str, MandateStatus] | None:
        """Why the group's mandate cannot be charged right now, if it cannot."""
        if not group.mandate_id or not group.mandate_customer_id:
            return "mandate details missing", MandateStatus.FAILED
        if group.mandate_expires_at is not None and group.mandate_expires_at <= self._clock.now():
            return "mandate expired", MandateStatus.EXPIRED
        if group.mandate_status != MandateStatus.ACTIVE.value:
            return f"mandate status {group.mandate_status}", _mandate_status(group.mandate_status)

        try:
            live = gateway.get_mandate_status(group.mandate_id)
        except PaymentGatewayError as exc:
            return f"mandate status check failed: {exc}", MandateStatus.FAILED
        if live.status != MandateStatus.ACTIVE.value:
            return f"mandate status {live.status}", _mandate_status(live.status)
        if live.expires_at is not None and live.expires_at <= self._clock.now():
            return "mandate expired", MandateStatus.EXPIRED
        return None

    def auto_charge_invoice(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> PaymentAttempt:
        """
        Charge the group's mandate, falling back to a manual order.

        The mandate is checked against the stored state and then live at
        the gateway before any charge.  A mandate that is missing, expired,
        inactive or cannot be looked up switches the group to manual
        payment and the customer gets a manual order.  A successful charge
        leaves the invoice pending; the ``payment.captured`` webhook
        finalizes it.

        An invoice that already carries a gateway order is never submitted
        again.
        """
        invoice = self._invoice_row(invoice_id)
        self._require_pending(invoice, "auto_charge_invoice")
        if invoice.net_amount <= 0:
            return self._mark_zero_amount_paid(invoice, actor_id)

        group = self._group_row(invoice.group_id)
        if invoice.gateway_order_id is not None:
            logger.info("invoice_already_submitted", extra={
                "invoice_id": str(invoice.id),
                "gateway_order_id": invoice.gateway_order_id,
            })
            return PaymentAttempt(
                invoice_id=invoice.id,
                mode=(
                    PaymentMode.MANDATE
                    if group.payment_method == PaymentMethod.MANDATE.value
                    else PaymentMode.MANUAL
                ),
                gateway_order_id=invoice.gateway_order_id,
                payment_id=invoice.payment_id,
                already_submitted=True,
            )

        if group.payment_method != PaymentMethod.MANDATE.value:
            return self.create_manual_payment_order(invoice_id, actor_id=actor_id)

        gateway = self._require_gateway()
        problem = self._mandate_problem(group, gateway)
        if problem is not None:
            reason, status = problem
            return self._fall_back_to_manual(invoice, group, reason, status, actor_id)

        try:
            order = gateway.create_order(
                invoice.net_amount,
                invoice.currency,
                self._receipt(invoice),
                {
                    "invoice_id": str(invoice.id),
                    "group_id": str(invoice.group_id),
                    "consumer_id": str(invoice.consumer_id),
                    "kind": "mandate",
                },
            )
            charge = gateway.charge_via_mandate(
                group.mandate_id,
                order.id,
                invoice.net_amount,
                group.mandate_customer_id,
                currency=invoice.currency,
            )
        except PaymentGatewayError as exc:
            return self._fall_back_to_manual(
                invoice, group, str(exc), MandateStatus.FAILED, actor_id,
            )

        invoice.gateway_order_id = order.id
        invoice.updated_by_id = actor_id
        self._session.flush()
        logger.info("mandate_charge_initiated", extra={
            "invoice_id": str(invoice.id),
            "gateway_order_id": order.id,
            "payment_id": charge.payment_id,
        })
        return PaymentAttempt(
            invoice_id=invoice.id,
            mode=PaymentMode.MANDATE,
            gateway_order_id=order.id,
            payment_id=charge.payment_id,
        )

    def _mark_paid(self, invoice: InvoiceModel, payment_id: str, actor_id: UUID) -> bool:
        """Returns False when the invoice was already paid."""
        if invoice.status == InvoiceStatus.PAID.value:
            return False
        if invoice.status == InvoiceStatus.FAILED.value:
            logger.warning("payment_received_for_failed_invoice", extra={
                "invoice_id": str(invoice.id),
                "payment_id": payment_id,
            })
        invoice.status = InvoiceStatus.PAID.value
        invoice.payment_id = payment_id
        invoice.paid_at = self._clock.now()
        invoice.updated_by_id = actor_id
        self._session.flush()
        logger.info("invoice_paid", extra={
            "invoice_id": str(invoice.id),
            "payment_id": payment_id,
            "net_amount": str(invoice.net_amount),
        })
        return True

    def confirm_payment(
        self,
        invoice_id: UUID,
        gateway_order_id: str,
        payment_id: str,
        signature: str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        """Client-side checkout confirmation (signature-verified)."""
        invoice = self._invoice_row(invoice_id)
        if not self._require_gateway().verify_signature(gateway_order_id, payment_id, signature):
            raise SignatureVerificationError(f"payment confirmation for invoice {invoice_id}")
        if invoice.gateway_order_id and invoice.gateway_order_id != gateway_order_id:
            raise InvalidInvoiceStateError(
                str(invoice_id), invoice.status, "confirm_payment (order mismatch)",
            )
        self._mark_paid(invoice, payment_id, actor_id)
        return invoice.to_dto()

    def handle_payment_webhook(
        self,
        raw_body: bytes | str,
        signature: str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> WebhookOutcome:
        """
        Apply a signed gateway webhook.

        Handles ``payment.captured`` (invoice paid) and ``refund.processed``
        / ``refund.failed``.  Other events are acknowledged and ignored.
        """
        if not self._require_gateway().verify_webhook_signature(raw_body, signature):
            raise SignatureVerificationError("payment webhook")
        body = json.loads(raw_body)
        event = body.get("event", "")
        payload = body.get("payload", {})

        if event == "payment.captured":
            payment = payload.get("payment", {}).get("entity", {})
            invoice = self._invoice_for_payment(payment)
            if invoice is None:
                logger.warning("webhook_invoice_not_found", extra={
                    "event": event,
                    "payment_id": payment.get("id"),
                })
                return WebhookOutcome(event=event, handled=False, detail="invoice not found")
            changed = self._mark_paid(invoice, payment.get("id"), actor_id)
            return WebhookOutcome(
                event=event,
                handled=True,
                invoice_id=invoice.id,
                detail="paid" if changed else "already paid",
            )

        if event in ("refund.processed", "refund.failed"):
            refund = payload.get("refund", {}).get("entity", {})
            status = RefundStatus.PROCESSED if event == "refund.processed" else RefundStatus.FAILED
            return self.handle_refund_webhook(refund.get("id"), status, actor_id=actor_id)

        logger.info("webhook_event_ignored", extra={"event": event})
        return WebhookOutcome(event=event, handled=False, detail="ignored")

    def _invoice_for_payment(self, payment: dict) -> InvoiceModel | None:
        invoice_id = (payment.get("notes") or {}).get("invoice_id")
        if invoice_id:
            invoice = self._session.get(InvoiceModel, UUID(invoice_id))
            if invoice is not None:
                return invoice
        order_id = payment.get("order_id")
        if not order_id:
            return None
        return self._session.execute(
            select(InvoiceModel).where(InvoiceModel.gateway_order_id == order_id)
        ).scalar_one_or_none()

    # =========================================================================
    # Retry bookkeeping
    # =========================================================================

    def retry_payment(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> PaymentAttempt:
        """One windowed retry: bump the counter and recreate the manual order."""
        invoice = self._invoice_row(invoice_id)
        self._require_pending(invoice, "retry_payment")
        invoice.retry_count += 1
        invoice.last_retry_at = self._clock.now()
        invoice.updated_by_id = actor_id
        self._session.flush()
        attempt = self.create_manual_payment_order(invoice_id, actor_id=actor_id)
        safe_notify(self._notifier, invoice.consumer_id, NotificationEvent.PAYMENT_RETRY, {
            "invoice_id": str(invoice.id),
            "retry_count": invoice.retry_count,
            "gateway_order_id": attempt.gateway_order_id,
        })
        return attempt

    def mark_invoice_failed(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        invoice = self._invoice_row(invoice_id)
        self._require_pending(invoice, "mark_failed")
        invoice.status = InvoiceStatus.FAILED.value
        invoice.updated_by_id = actor_id
        self._session.flush()
        logger.warning("invoice_failed", extra={
            "invoice_id": str(invoice.id),
            "retry_count": invoice.retry_count,
        })
        return invoice.to_dto()

    # =========================================================================
    # Refunds
    # =========================================================================

    def latest_paid_invoice(self, group_id: UUID) -> Invoice | None:
        row = self._session.execute(
            select(InvoiceModel)
            .where(
                InvoiceModel.group_id == group_id,
                InvoiceModel.status == InvoiceStatus.PAID.value,
            )
            .order_by(InvoiceModel.period_start.desc())
            .limit(1)
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    def _request_refund(
        self,
        invoice: InvoiceModel,
        amount: Decimal,
        reason: str | None,
        actor_id: UUID,
    ) -> Invoice:
        invoice.refund_amount = amount
        invoice.updated_by_id = actor_id
        try:
            refund = self._require_gateway().create_refund(
                invoice.payment_id,
                amount,
                {"invoice_id": str(invoice.id), "reason": reason or ""},
            )
        except PaymentGatewayError as exc:
            invoice.refund_status = RefundStatus.FAILED.value
            self._session.flush()
            logger.error("refund_request_failed", extra={
                "invoice_id": str(invoice.id),
                "amount": str(amount),
                "error": str(exc),
            })
            safe_notify(self._notifier, invoice.consumer_id, NotificationEvent.REFUND_FAILED, {
                "invoice_id": str(invoice.id),
                "amount": str(amount),
            })
            return invoice.to_dto()

        invoice.refund_id = refund.id
        if refund.status == RefundStatus.PROCESSED.value:
            invoice.refund_status = RefundStatus.PROCESSED.value
            invoice.refunded_at = self._clock.now()
        else:
            invoice.refund_status = RefundStatus.PENDING.value
        self._session.flush()
        logger.info("refund_requested", extra={
            "invoice_id": str(invoice.id),
            "refund_id": refund.id,
            "amount": str(amount),
            "refund_status": invoice.refund_status,
        })
        return invoice.to_dto()

    def process_refund(
        self,
        invoice_id: UUID,
        amount: Decimal | None = None,
        reason: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        """
        Refund a paid invoice (all of it by default).

        A gateway failure is recorded as ``refund_status=failed`` and
        returned, not raised; ``retry_failed_refund`` or
        ``convert_failed_refund_to_credit`` take it from there.
        """
        invoice = self._invoice_row(invoice_id)
        if invoice.status != InvoiceStatus.PAID.value or not invoice.payment_id:
            raise RefundError(str(invoice_id), f"invoice is {invoice.status}, not paid")
        if invoice.refund_status in (RefundStatus.PENDING.value, RefundStatus.PROCESSED.value):
            raise RefundError(str(invoice_id), f"refund already {invoice.refund_status}")
        amount = invoice.net_amount if amount is None else Decimal(amount)
        if amount <= 0 or amount > invoice.net_amount:
            raise RefundError(
                str(invoice_id), f"amount {amount} outside (0, {invoice.net_amount}]",
            )
        return self._request_refund(invoice, amount, reason, actor_id)

    def retry_failed_refund(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Invoice:
        invoice = self._invoice_row(invoice_id)
        if invoice.refund_status != RefundStatus.FAILED.value:
            raise RefundError(str(invoice_id), f"refund is {invoice.refund_status}, not failed")
        return self._request_refund(
            invoice, invoice.refund_amount or invoice.net_amount, "retry", actor_id,
        )

    def handle_refund_webhook(
        self,
        refund_id: str | None,
        status: RefundStatus | str,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> WebhookOutcome:
        """Record the gateway's final word on a refund (idempotent)."""
        status = RefundStatus(status)
        event = f"refund.{status.value}"
        if not refund_id:
            return WebhookOutcome(event=event, handled=False, detail="missing refund id")
        invoice = self._session.execute(
            select(InvoiceModel).where(InvoiceModel.refund_id == refund_id)
        ).scalar_one_or_none()
        if invoice is None:
            logger.warning("refund_invoice_not_found", extra={"refund_id": refund_id})
            return WebhookOutcome(event=event, handled=False, detail="invoice not found")
        if invoice.refund_status == status.value:
            return WebhookOutcome(
                event=event, handled=True, invoice_id=invoice.id, detail="unchanged",
            )

        invoice.refund_status = status.value
        invoice.updated_by_id = actor_id
        if status == RefundStatus.PROCESSED:
            invoice.refunded_at = self._clock.now()
            pending = self._credits.pending_refund_for_invoice(invoice.id)
            if pending is not None:
                self._credits.settle_refunded_credit(pending.id, actor_id=actor_id)
        elif status == RefundStatus.FAILED:
            safe_notify(self._notifier, invoice.consumer_id, NotificationEvent.REFUND_FAILED, {
                "invoice_id": str(invoice.id),
                "refund_id": refund_id,
            })
        self._session.flush()

        logger.info("refund_status_updated", extra={
            "invoice_id": str(invoice.id),
            "refund_id": refund_id,
            "refund_status": status.value,
        })
        return WebhookOutcome(
            event=event, handled=True, invoice_id=invoice.id, detail=status.value,
        )

    def convert_failed_refund_to_credit(
        self,
        global_credit_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> GlobalCredit:
        """
        Give up on a refund and leave its value as spendable account credit.

        Only allowed once the linked invoice's refund has failed.
        """
        pending = self._credits.get_global_credit(global_credit_id)
        if pending.status == GlobalCreditStatus.PENDING_REFUND and pending.source_invoice_id:
            invoice = self._invoice_row(pending.source_invoice_id)
            if invoice.refund_status != RefundStatus.FAILED.value:
                raise RefundError(
                    str(invoice.id), f"refund is {invoice.refund_status}, not failed",
                )
        credit = self._credits.release_pending_refund(global_credit_id, actor_id=actor_id)
        logger.info("failed_refund_converted_to_credit", extra={
            "global_credit_id": str(global_credit_id),
            "amount": str(credit.amount),
        })
        return credit
