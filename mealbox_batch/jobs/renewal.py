"""
Renewal jobs (``renewal_weekly`` / ``renewal_monthly``).

Each page of due groups is renewed through
``TransitionGateway.run_renewals``; every invoice it returns is then put
in front of the payment gateway: mandate charge when the group has a
usable mandate, otherwise a manual payment order.  Zero-amount invoices
are marked paid without a gateway call.

The renewed page is committed before the first gateway call and again
after every charge, so a failure later in the page never rolls back an
invoice the gateway has already seen.  A rerun finds those groups renewed
and those invoices submitted.
"""

from __future__ import annotations

from collections.abc import Sequence
from uuid import UUID

from mealbox_engines.cycles import PeriodType
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.models import InvoiceStatus, PaymentMode

from mealbox_batch.domain.types import JobLogLevel, JobType, RenewalJobResult
from mealbox_batch.jobs.base import BaseJobDefinition, JobContext, parse_cursor

logger = get_logger("batch.jobs.renewal")


class RenewalJob(BaseJobDefinition):
    result_type = RenewalJobResult

    def __init__(self, period_type: PeriodType | str):
        self.period_type = PeriodType(period_type)
        self.job_type = (
            JobType.RENEWAL_WEEKLY
            if self.period_type is PeriodType.WEEKLY
            else JobType.RENEWAL_MONTHLY
        )
        self.description = f"Renew {self.period_type.value} subscription groups due today"

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[UUID]:
        return context.services.transitions.due_group_ids(
            self.period_type,
            context.run_date,
            after_id=parse_cursor(cursor),
            limit=batch_size,
        )

    def cursor_of(self, item: UUID) -> str:
        return str(item)

    def process_batch(self, context: JobContext, items: Sequence[UUID]) -> None:
        stats = context.stats
        run = context.services.transitions.run_renewals(
            self.period_type, context.run_date, list(items), actor_id=context.actor_id,
        )
        for group_id, error in run.failed:
            stats.errors += 1
            context.log(JobLogLevel.ERROR, "renewal_failed", group_id=str(group_id), error=error)
        # invoices and advanced renewal dates are durable before any charge
        context.checkpoint()

        billing = context.services.billing
        for renewed in run.invoices_created:
            stats.processed += 1
            stats.bump("invoices_created" if renewed.created else "invoices_reused")
            if billing.get_invoice(renewed.invoice_id).status != InvoiceStatus.PENDING:
                continue

            savepoint = context.session.begin_nested()
            try:
                attempt = billing.auto_charge_invoice(renewed.invoice_id, actor_id=context.actor_id)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                stats.errors += 1
                logger.warning("renewal_payment_failed", exc_info=True, extra={
                    "invoice_id": str(renewed.invoice_id),
                    "group_id": str(renewed.group_id),
                })
                context.log(
                    JobLogLevel.ERROR, "renewal_payment_failed",
                    invoice_id=str(renewed.invoice_id),
                    error=str(exc),
                )
                continue
            context.checkpoint()

            if attempt.already_submitted:
                stats.bump("already_submitted")
            elif attempt.mode is PaymentMode.ZERO_AMOUNT:
                stats.bump("zero_amount_paid")
            elif attempt.mode is PaymentMode.MANDATE:
                stats.bump("mandate_charged")
            else:
                stats.bump("manual_orders")
            if attempt.mandate_failed:
                stats.bump("mandate_failed")
