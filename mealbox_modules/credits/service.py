"""
Credit Ledger Service - create, consume, expire and convert meal credits.

Responsibility:
    Owns every write to ``credits``, ``credit_applications`` and
    ``global_credits``.  Billing calls ``apply_credits_to_invoice`` while
    building an invoice; the Credit-Expiry job calls ``expire_credits``;
    cancellation paths call ``convert_group_credits``.

Invariants enforced:
    - 0 <= consumed_quantity <= quantity on every credit.
    - FIFO: credits are consumed oldest ``created_at`` first (``id`` breaks
      ties), so an older credit is exhausted before a newer one is touched.
    - One CreditApplication row per consumption.
    - Applying credits to an invoice that already has applications is a
      no-op (re-running a renewal never double-credits).
    - Credits are never deleted: expiry and conversion are status changes.

Failure modes:
    - InvalidCreditQuantityError for non-positive quantities.
    - SubscriptionNotFoundError / InvoiceNotFoundError for unknown ids.
    - InvalidInvoiceStateError when applying credits to a non-pending invoice.
    - GlobalCreditNotFoundError / InvalidGlobalCreditStateError on the
      refund settlement paths.

The service flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mealbox_engines.cycles import round_money
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import (
    GlobalCreditNotFoundError,
    InvalidCreditQuantityError,
    InvalidGlobalCreditStateError,
    InvalidInvoiceStateError,
    InvoiceNotFoundError,
    SubscriptionGroupNotFoundError,
    SubscriptionNotFoundError,
)
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.orm import InvoiceModel
from mealbox_modules.credits.models import (
    Credit,
    CreditApplication,
    CreditApplicationSummary,
    CreditConversion,
    CreditReason,
    CreditStatus,
    GlobalCredit,
    GlobalCreditSource,
    GlobalCreditStatus,
)
from mealbox_modules.credits.orm import (
    CreditApplicationModel,
    CreditModel,
    GlobalCreditModel,
)
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel, SubscriptionModel

logger = get_logger("modules.credits.service")


class CreditService:
    """Slot-scoped credit ledger plus account-level global credits."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        platform: PlatformService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._platform = platform or PlatformService(session, self._clock)

    # =========================================================================
    # Creation
    # =========================================================================

    def create_credit(
        self,
        subscription_id: UUID,
        slot: str,
        reason: CreditReason | str,
        quantity: int = 1,
        source_date: date | None = None,
        notes: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Credit:
        """
        Grant ``quantity`` meal credits on a subscription slot.

        Expiry is ``now + credit_expiry_days``.  When ``source_date`` is
        given the call is idempotent: an existing credit for the same
        (subscription, slot, reason, source_date) is returned unchanged.
        """
        if quantity <= 0:
            raise InvalidCreditQuantityError(quantity)
        reason = CreditReason(reason)
        if self._session.get(SubscriptionModel, subscription_id) is None:
            raise SubscriptionNotFoundError(str(subscription_id))

        if source_date is not None:
            existing = self._session.execute(
                select(CreditModel).where(
                    CreditModel.subscription_id == subscription_id,
                    CreditModel.slot == slot,
                    CreditModel.reason == reason.value,
                    CreditModel.source_date == source_date,
                )
            ).scalar_one_or_none()
            if existing is not None:
                logger.debug("credit_already_exists", extra={
                    "credit_id": str(existing.id),
                    "subscription_id": str(subscription_id),
                    "reason": reason.value,
                    "source_date": source_date.isoformat(),
                })
                return existing.to_dto()

        now = self._clock.now()
        settings = self._platform.get_settings()
        credit = CreditModel(
            subscription_id=subscription_id,
            slot=slot,
            reason=reason.value,
            status=CreditStatus.AVAILABLE.value,
            quantity=quantity,
            consumed_quantity=0,
            expires_at=now + timedelta(days=settings.credit_expiry_days),
            source_date=source_date,
            notes=notes,
            created_at=now,
            created_by_id=actor_id,
        )
        self._session.add(credit)
        self._session.flush()

        logger.info("credit_created", extra={
            "credit_id": str(credit.id),
            "subscription_id": str(subscription_id),
            "slot": slot,
            "reason": reason.value,
            "quantity": quantity,
            "expires_at": credit.expires_at.isoformat(),
        })
        return credit.to_dto()

    def grant_manual_adjustment(
        self,
        subscription_id: UUID,
        slot: str,
        quantity: int,
        notes: str,
        source_date: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Credit:
        """Operator-issued goodwill credit."""
        return self.create_credit(
            subscription_id=subscription_id,
            slot=slot,
            reason=CreditReason.MANUAL_ADJUSTMENT,
            quantity=quantity,
            source_date=source_date,
            notes=notes,
            actor_id=actor_id,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def _usable_credits(
        self, subscription_id: UUID, slot: str, now: datetime,
    ) -> list[CreditModel]:
        return list(self._session.execute(
            select(CreditModel)
            .where(
                CreditModel.subscription_id == subscription_id,
                CreditModel.slot == slot,
                CreditModel.status == CreditStatus.AVAILABLE.value,
                CreditModel.expires_at > now,
                CreditModel.consumed_quantity < CreditModel.quantity,
            )
            .order_by(CreditModel.created_at, CreditModel.id)
        ).scalars().all())

    def get_available_credits(self, subscription_id: UUID, slot: str) -> int:
        """Meals still claimable on a subscription slot right now."""
        total = self._session.execute(
            select(func.coalesce(
                func.sum(CreditModel.quantity - CreditModel.consumed_quantity), 0,
            )).where(
                CreditModel.subscription_id == subscription_id,
                CreditModel.slot == slot,
                CreditModel.status == CreditStatus.AVAILABLE.value,
                CreditModel.expires_at > self._clock.now(),
            )
        ).scalar_one()
        return int(total)

    def list_credits(self, subscription_id: UUID) -> list[Credit]:
        rows = self._session.execute(
            select(CreditModel)
            .where(CreditModel.subscription_id == subscription_id)
            .order_by(CreditModel.created_at, CreditModel.id)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def get_applications(self, invoice_id: UUID) -> list[CreditApplication]:
        rows = self._session.execute(
            select(CreditApplicationModel)
            .where(CreditApplicationModel.invoice_id == invoice_id)
            .order_by(CreditApplicationModel.created_at, CreditApplicationModel.id)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    # =========================================================================
    # FIFO application
    # =========================================================================

    def apply_credits_to_invoice(
        self,
        invoice_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CreditApplicationSummary:
        """
        Consume available credits against each line of a pending invoice.

        Per line, credits for the line's subscription and slot are walked
        oldest first; each contributes ``min(remaining, available)``.  Line
        and invoice totals are recomputed afterwards.
        """
        invoice = self._session.get(InvoiceModel, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))

        already = self._session.execute(
            select(func.count(CreditApplicationModel.id))
            .where(CreditApplicationModel.invoice_id == invoice_id)
        ).scalar_one()
        if already:
            logger.info("credits_already_applied", extra={
                "invoice_id": str(invoice_id),
                "applications": already,
            })
            return CreditApplicationSummary(
                invoice_id=invoice_id,
                credits_applied=invoice.credits_applied,
                billable_meals=invoice.billable_meals,
                net_amount=invoice.net_amount,
                already_applied=True,
            )

        if invoice.status != "pending":
            raise InvalidInvoiceStateError(str(invoice_id), invoice.status, "apply_credits")

        now = self._clock.now()
        applications: list[CreditApplication] = []
        for line in invoice.line_items:
            remaining = line.scheduled_meals - line.credits_applied
            if remaining <= 0:
                continue
            for credit in self._usable_credits(line.subscription_id, line.slot, now):
                if remaining <= 0:
                    break
                take = min(remaining, credit.available)
                credit.consumed_quantity += take
                credit.updated_by_id = actor_id
                line.credits_applied += take
                remaining -= take
                row = CreditApplicationModel(
                    credit_id=credit.id,
                    invoice_id=invoice.id,
                    line_item_id=line.id,
                    quantity_applied=take,
                    created_at=now,
                    created_by_id=actor_id,
                )
                self._session.add(row)
                applications.append(CreditApplication(
                    credit_id=credit.id,
                    invoice_id=invoice.id,
                    line_item_id=line.id,
                    quantity_applied=take,
                ))
                logger.info("credit_applied", extra={
                    "credit_id": str(credit.id),
                    "invoice_id": str(invoice.id),
                    "slot": line.slot,
                    "quantity_applied": take,
                    "credit_remaining": credit.available,
                })

        invoice.recalculate_totals()
        invoice.updated_by_id = actor_id
        self._session.flush()

        return CreditApplicationSummary(
            invoice_id=invoice.id,
            credits_applied=invoice.credits_applied,
            billable_meals=invoice.billable_meals,
            net_amount=invoice.net_amount,
            applications=tuple(applications),
        )

    # =========================================================================
    # Expiry
    # =========================================================================

    def expire_credits(
        self,
        as_of: datetime,
        credit_ids: Sequence[UUID] | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> list[Credit]:
        """
        Mark available credits with ``expires_at < as_of`` as expired.

        Returns the credits that changed.  No financial reversal happens;
        consumed quantities are left as they are.
        """
        stmt = select(CreditModel).where(
            CreditModel.status == CreditStatus.AVAILABLE.value,
            CreditModel.expires_at < as_of,
        )
        if credit_ids is not None:
            if not credit_ids:
                return []
            stmt = stmt.where(CreditModel.id.in_(list(credit_ids)))

        expired: list[Credit] = []
        for credit in self._session.execute(stmt).scalars().all():
            credit.status = CreditStatus.EXPIRED.value
            credit.updated_by_id = actor_id
            expired.append(credit.to_dto())
        self._session.flush()

        if expired:
            logger.info("credits_expired", extra={
                "count": len(expired),
                "as_of": as_of.isoformat(),
            })
        return expired

    # =========================================================================
    # Conversion to global credit
    # =========================================================================

    def convert_group_credits(
        self,
        group_id: UUID,
        source_type: GlobalCreditSource | str = GlobalCreditSource.PAUSE_AUTO_CANCEL,
        status: GlobalCreditStatus | str = GlobalCreditStatus.AVAILABLE,
        source_invoice_id: UUID | None = None,
        max_amount: Decimal | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> CreditConversion:
        """
        Fold every usable slot credit of the group into one GlobalCredit.

        The GlobalCredit amount is ``sum(available x vendor slot price)``.
        Converted credits keep their consumed quantity and move to
        ``converted``.  Nothing is created when there is nothing to convert.

        With ``max_amount`` the GlobalCredit is capped and any excess goes
        to a second, spendable ``cancel_credit`` GlobalCredit.
        """
        group = self._session.get(SubscriptionGroupModel, group_id)
        if group is None:
            raise SubscriptionGroupNotFoundError(str(group_id))

        now = self._clock.now()
        amount = Decimal("0")
        credits_converted = 0
        meals_converted = 0
        for subscription in group.subscriptions:
            credits = self._usable_credits(subscription.id, subscription.slot, now)
            if not credits:
                continue
            price = self._platform.get_vendor_slot(
                group.vendor_id, subscription.slot,
            ).base_price_per_meal
            for credit in credits:
                amount += Decimal(credit.available) * price
                meals_converted += credit.available
                credits_converted += 1
                credit.status = CreditStatus.CONVERTED.value
                credit.updated_by_id = actor_id

        if credits_converted == 0:
            return CreditConversion(
                group_id=group_id,
                credits_converted=0,
                meals_converted=0,
                global_credit_amount=Decimal("0.00"),
            )

        amount = round_money(amount)
        remainder = Decimal("0.00")
        if max_amount is not None and amount > max_amount:
            remainder = amount - round_money(max_amount)
            amount = round_money(max_amount)

        global_credit = self.create_global_credit(
            consumer_id=group.consumer_id,
            amount=amount,
            source_type=source_type,
            status=status,
            source_group_id=group_id,
            source_invoice_id=source_invoice_id,
            notes=f"{meals_converted} meal credit(s) converted",
            actor_id=actor_id,
        )
        remainder_credit = None
        if remainder > 0:
            remainder_credit = self.create_global_credit(
                consumer_id=group.consumer_id,
                amount=remainder,
                source_type=GlobalCreditSource.CANCEL_CREDIT,
                status=GlobalCreditStatus.AVAILABLE,
                source_group_id=group_id,
                notes="converted credit above refundable amount",
                actor_id=actor_id,
            )

        logger.info("group_credits_converted", extra={
            "group_id": str(group_id),
            "credits_converted": credits_converted,
            "meals_converted": meals_converted,
            "global_credit_amount": str(global_credit.amount),
            "remainder_amount": str(remainder),
        })
        return CreditConversion(
            group_id=group_id,
            credits_converted=credits_converted,
            meals_converted=meals_converted,
            global_credit_amount=global_credit.amount,
            global_credit_id=global_credit.id,
            remainder_credit_id=remainder_credit.id if remainder_credit else None,
            remainder_amount=remainder,
        )

    def create_global_credit(
        self,
        consumer_id: UUID,
        amount: Decimal,
        source_type: GlobalCreditSource | str,
        status: GlobalCreditStatus | str = GlobalCreditStatus.AVAILABLE,
        source_group_id: UUID | None = None,
        source_invoice_id: UUID | None = None,
        notes: str | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> GlobalCredit:
        row = GlobalCreditModel(
            consumer_id=consumer_id,
            amount=round_money(amount),
            consumed_amount=Decimal("0"),
            status=GlobalCreditStatus(status).value,
            source_type=GlobalCreditSource(source_type).value,
            source_group_id=source_group_id,
            source_invoice_id=source_invoice_id,
            notes=notes,
            created_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(row)
        self._session.flush()

        logger.info("global_credit_created", extra={
            "global_credit_id": str(row.id),
            "consumer_id": str(consumer_id),
            "amount": str(row.amount),
            "status": row.status,
            "source_type": row.source_type,
        })
        return row.to_dto()

    def get_global_credit(self, global_credit_id: UUID) -> GlobalCredit:
        return self._global_credit_row(global_credit_id).to_dto()

    def get_global_balance(self, consumer_id: UUID) -> Decimal:
        """Spendable account-level credit for a consumer."""
        total = self._session.execute(
            select(func.coalesce(
                func.sum(GlobalCreditModel.amount - GlobalCreditModel.consumed_amount), 0,
            )).where(
                GlobalCreditModel.consumer_id == consumer_id,
                GlobalCreditModel.status == GlobalCreditStatus.AVAILABLE.value,
            )
        ).scalar_one()
        return round_money(Decimal(total))

    def pending_refund_for_invoice(self, invoice_id: UUID) -> GlobalCreditModel | None:
        return self._session.execute(
            select(GlobalCreditModel)
            .where(
                GlobalCreditModel.source_invoice_id == invoice_id,
                GlobalCreditModel.status == GlobalCreditStatus.PENDING_REFUND.value,
            )
            .order_by(GlobalCreditModel.created_at, GlobalCreditModel.id)
            .limit(1)
        ).scalar_one_or_none()

    def settle_refunded_credit(
        self,
        global_credit_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> GlobalCredit:
        """A pending-refund credit whose refund was processed is used up."""
        row = self._require_pending_refund(global_credit_id)
        row.status = GlobalCreditStatus.CONSUMED.value
        row.consumed_amount = row.amount
        row.updated_by_id = actor_id
        self._session.flush()
        return row.to_dto()

    def release_pending_refund(
        self,
        global_credit_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> GlobalCredit:
        """Turn an unrefundable pending-refund credit into spendable credit."""
        row = self._require_pending_refund(global_credit_id)
        row.status = GlobalCreditStatus.AVAILABLE.value
        row.updated_by_id = actor_id
        self._session.flush()

        logger.info("pending_refund_released", extra={
            "global_credit_id": str(row.id),
            "amount": str(row.amount),
        })
        return row.to_dto()

    def _global_credit_row(self, global_credit_id: UUID) -> GlobalCreditModel:
        row = self._session.get(GlobalCreditModel, global_credit_id)
        if row is None:
            raise GlobalCreditNotFoundError(str(global_credit_id))
        return row

    def _require_pending_refund(self, global_credit_id: UUID) -> GlobalCreditModel:
        row = self._global_credit_row(global_credit_id)
        if row.status != GlobalCreditStatus.PENDING_REFUND.value:
            raise InvalidGlobalCreditStateError(
                str(global_credit_id), row.status, GlobalCreditStatus.PENDING_REFUND.value,
            )
        return row
