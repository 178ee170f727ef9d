"""
mealbox_services.transitions -- atomic multi-row subscription transitions.

Responsibility:
    The two correctness-critical transitions the batch jobs hand off to
    persistence as single units of work:

    ``auto_cancel_paused_group``
        Converts a paused group's remaining slot credits into one
        GlobalCredit, cancels the group, its subscriptions and its future
        scheduled orders.
    ``run_renewals``
        Raises the next full-cycle invoice for each due group and advances
        the renewal dates and skip counters, whatever the payment outcome.

Architecture position:
    Services -- composes CreditService, BillingService and OrderService
    over one session.  Imported by ``mealbox_batch`` job definitions only.

Invariants enforced:
    - Every group is processed inside its own SAVEPOINT: either all of its
      rows move or none do.
    - Renewal is idempotent on ``(group_id, period_start)``: a group whose
      renewal already ran is not picked up again (its ``renewal_date`` has
      moved) and an existing invoice for the cycle is reused.
    - ``skips_used_current_cycle`` resets to 0 exactly once per renewal.

Failure modes:
    - SubscriptionGroupNotFoundError / InvalidStatusTransitionError from
      ``auto_cancel_paused_group`` (nothing is written).
    - ``run_renewals`` never raises for one bad group: the group's
      savepoint is rolled back and it is reported in ``failed``.

The gateway flushes but never commits; the caller owns the transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealbox_engines.cycles import PeriodType, cycle_for
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import SubscriptionGroupNotFoundError
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.service import BillingService
from mealbox_modules.credits.models import GlobalCreditSource, GlobalCreditStatus
from mealbox_modules.credits.service import CreditService
from mealbox_modules.orders.service import OrderService
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.models import SubscriptionStatus, validate_transition
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel

logger = get_logger("services.transitions")

AUTO_CANCEL_REASON = "pause limit exceeded"


@dataclass(frozen=True)
class AutoCancelResult:
    group_id: UUID
    consumer_id: UUID
    credits_converted: int
    global_credit_amount: Decimal
    global_credit_id: UUID | None = None
    orders_cancelled: int = 0


@dataclass(frozen=True)
class RenewedInvoice:
    """One group renewed by ``run_renewals``."""
    group_id: UUID
    invoice_id: UUID
    period_start: date
    period_end: date
    net_amount: Decimal
    created: bool


@dataclass(frozen=True)
class RenewalRunResult:
    period_type: str
    run_date: date
    invoices_created: tuple[RenewedInvoice, ...] = ()
    failed: tuple[tuple[UUID, str], ...] = field(default_factory=tuple)

    @property
    def renewed_count(self) -> int:
        return len(self.invoices_created)


class TransitionGateway:
    """Atomic persistence transitions used by the batch jobs."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        credits: CreditService | None = None,
        billing: BillingService | None = None,
        orders: OrderService | None = None,
        platform: PlatformService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._platform = platform or PlatformService(session, self._clock)
        self._credits = credits or CreditService(session, self._clock, self._platform)
        self._billing = billing or BillingService(
            session, self._clock, credits=self._credits, platform=self._platform,
        )
        self._orders = orders or OrderService(
            session, self._clock, credits=self._credits, platform=self._platform,
        )

    # -------------------------------------------------------------------------
    # Auto-cancel
    # -------------------------------------------------------------------------

    def auto_cancel_paused_group(
        self,
        group_id: UUID,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> AutoCancelResult:
        """Cancel a paused group that outlived the pause limit."""
        group = self._session.get(SubscriptionGroupModel, group_id)
        if group is None:
            raise SubscriptionGroupNotFoundError(str(group_id))
        validate_transition("subscription_group", group.id, group.status, SubscriptionStatus.CANCELLED)
        if group.status != SubscriptionStatus.PAUSED.value:
            raise ValueError(f"group {group_id} is {group.status}, not paused")

        savepoint = self._session.begin_nested()
        try:
            conversion = self._credits.convert_group_credits(
                group.id,
                source_type=GlobalCreditSource.PAUSE_AUTO_CANCEL,
                status=GlobalCreditStatus.AVAILABLE,
                actor_id=actor_id,
            )
            cancelled_orders = self._orders.cancel_scheduled_orders(
                group.id, self._clock.today(), AUTO_CANCEL_REASON, actor_id,
            )
            now = self._clock.now()
            group.status = SubscriptionStatus.CANCELLED.value
            group.paused_at = None
            group.cancelled_at = now
            group.cancellation_reason = AUTO_CANCEL_REASON
            group.updated_by_id = actor_id
            for subscription in group.subscriptions:
                subscription.status = SubscriptionStatus.CANCELLED.value
                subscription.paused_at = None
                subscription.cancelled_at = now
                subscription.updated_by_id = actor_id
            self._session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            raise

        logger.info("paused_group_auto_cancelled", extra={
            "group_id": str(group.id),
            "credits_converted": conversion.credits_converted,
            "global_credit_amount": str(conversion.global_credit_amount),
            "orders_cancelled": len(cancelled_orders),
        })
        return AutoCancelResult(
            group_id=group.id,
            consumer_id=group.consumer_id,
            credits_converted=conversion.credits_converted,
            global_credit_amount=conversion.global_credit_amount,
            global_credit_id=conversion.global_credit_id,
            orders_cancelled=len(cancelled_orders),
        )

    # -------------------------------------------------------------------------
    # Renewals
    # -------------------------------------------------------------------------

    def due_group_ids(
        self,
        period_type: PeriodType | str,
        run_date: date,
        after_id: UUID | None = None,
        limit: int | None = None,
    ) -> list[UUID]:
        """Active groups of ``period_type`` renewing on ``run_date``, in id order."""
        stmt = (
            select(SubscriptionGroupModel.id)
            .where(
                SubscriptionGroupModel.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionGroupModel.period_type == PeriodType(period_type).value,
                SubscriptionGroupModel.renewal_date == run_date,
            )
            .order_by(SubscriptionGroupModel.id)
        )
        if after_id is not None:
            stmt = stmt.where(SubscriptionGroupModel.id > after_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self._session.execute(stmt).scalars().all())

    def run_renewals(
        self,
        period_type: PeriodType | str,
        run_date: date,
        group_ids: Sequence[UUID] | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> RenewalRunResult:
        """
        Renew every due group (or the given ones) for the cycle starting ``run_date``.

        Groups in ``group_ids`` that are no longer due (already renewed,
        paused, cancelled) are passed over silently.
        """
        period_type = PeriodType(period_type)
        if group_ids is None:
            group_ids = self.due_group_ids(period_type, run_date)

        renewed: list[RenewedInvoice] = []
        failed: list[tuple[UUID, str]] = []
        for group_id in group_ids:
            savepoint = self._session.begin_nested()
            try:
                outcome = self._renew_group(group_id, period_type, run_date, actor_id)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                failed.append((group_id, str(exc)))
                logger.error("group_renewal_failed", exc_info=True, extra={
                    "group_id": str(group_id),
                    "run_date": run_date.isoformat(),
                })
                continue
            if outcome is not None:
                renewed.append(outcome)

        logger.info("renewals_run", extra={
            "period_type": period_type.value,
            "run_date": run_date.isoformat(),
            "renewed": len(renewed),
            "failed": len(failed),
        })
        return RenewalRunResult(
            period_type=period_type.value,
            run_date=run_date,
            invoices_created=tuple(renewed),
            failed=tuple(failed),
        )

    def _renew_group(
        self,
        group_id: UUID,
        period_type: PeriodType,
        run_date: date,
        actor_id: UUID,
    ) -> RenewedInvoice | None:
        group = self._session.get(SubscriptionGroupModel, group_id)
        if (
            group is None
            or group.status != SubscriptionStatus.ACTIVE.value
            or group.period_type != period_type.value
            or group.renewal_date != run_date
        ):
            return None

        cycle = cycle_for(run_date, period_type)
        next_cycle = cycle_for(cycle.renewal_date, period_type)
        active = [
            s for s in group.subscriptions
            if s.status == SubscriptionStatus.ACTIVE.value
        ]
        existed = self._billing.find_invoice(group.id, cycle.cycle_start) is not None
        invoice = self._billing.create_invoice(group, cycle, active, actor_id=actor_id)

        now = self._clock.now()
        group.renewal_date = cycle.renewal_date
        group.last_renewed_at = now
        group.updated_by_id = actor_id
        for subscription in active:
            subscription.skips_used_current_cycle = 0
            subscription.renewal_date = cycle.renewal_date
            subscription.next_cycle_start = next_cycle.cycle_start
            subscription.next_cycle_end = next_cycle.cycle_end
            subscription.last_renewed_at = now
            subscription.updated_by_id = actor_id
        self._session.flush()

        logger.info("group_renewed", extra={
            "group_id": str(group.id),
            "invoice_id": str(invoice.id),
            "period_start": cycle.cycle_start.isoformat(),
            "renewal_date": cycle.renewal_date.isoformat(),
            "invoice_reused": existed,
        })
        return RenewedInvoice(
            group_id=group.id,
            invoice_id=invoice.id,
            period_start=cycle.cycle_start,
            period_end=cycle.cycle_end,
            net_amount=invoice.net_amount,
            created=not existed,
        )
