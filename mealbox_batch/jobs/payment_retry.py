"""
Payment-retry job.

Walks pending invoices that are due and asks the retry schedule what to
do with each: wait, recreate the manual payment order (one attempt per
window), or, once 72 hours have passed, pause the group and fail the
invoice.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select

from mealbox_engines.retry_schedule import RetryAction, evaluate_retry
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.models import InvoiceStatus
from mealbox_modules.billing.orm import InvoiceModel
from mealbox_modules.subscriptions.models import SubscriptionStatus
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel
from mealbox_services.notifier import NotificationEvent, safe_notify

from mealbox_batch.domain.types import JobType, PaymentRetryJobResult
from mealbox_batch.jobs.base import BaseJobDefinition, JobContext, parse_cursor

logger = get_logger("batch.jobs.payment_retry")


class PaymentRetryJob(BaseJobDefinition):
    job_type = JobType.PAYMENT_RETRY
    description = "Retry unpaid renewal invoices and pause groups after 72 hours"
    result_type = PaymentRetryJobResult

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[InvoiceModel]:
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.status == InvoiceStatus.PENDING.value,
                InvoiceModel.due_date <= context.run_date,
            )
            .order_by(InvoiceModel.id)
            .limit(batch_size)
        )
        after = parse_cursor(cursor)
        if after is not None:
            stmt = stmt.where(InvoiceModel.id > after)
        return list(context.session.execute(stmt).scalars().all())

    def process_item(self, context: JobContext, invoice: InvoiceModel) -> None:
        decision = evaluate_retry(
            due_date=invoice.due_date,
            now=context.clock.now(),
            retry_count=invoice.retry_count,
            last_retry_at=invoice.last_retry_at,
        )
        services = context.services

        if decision.action is RetryAction.WAIT:
            context.stats.bump("waiting")
            return

        if decision.action is RetryAction.RETRY:
            services.billing.retry_payment(invoice.id, actor_id=context.actor_id)
            context.stats.bump("retried")
            logger.info("payment_retried", extra={
                "invoice_id": str(invoice.id),
                "window": decision.window,
                "hours_since_renewal": round(decision.hours_since_renewal, 2),
            })
            return

        group = context.session.get(SubscriptionGroupModel, invoice.group_id)
        if group is not None and group.status == SubscriptionStatus.ACTIVE.value:
            # pausing fails every pending invoice of the group, this one included
            services.subscriptions.pause_group(group.id, actor_id=context.actor_id)
            safe_notify(services.notifier, group.consumer_id, NotificationEvent.SUBSCRIPTION_PAUSED, {
                "group_id": str(group.id),
                "invoice_id": str(invoice.id),
                "reason": "payment not received within 72 hours",
            })
        if invoice.status == InvoiceStatus.PENDING.value:
            services.billing.mark_invoice_failed(invoice.id, actor_id=context.actor_id)
        context.stats.bump("paused")
        logger.warning("group_paused_for_nonpayment", extra={
            "invoice_id": str(invoice.id),
            "group_id": str(invoice.group_id),
            "hours_since_renewal": round(decision.hours_since_renewal, 2),
        })
