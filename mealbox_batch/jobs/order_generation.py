"""
Order-generation job.

Expands every paid invoice that has no orders yet into daily meal orders
(through ``OrderService.generate_orders_for_invoice``).
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select

from mealbox_modules.billing.models import InvoiceStatus
from mealbox_modules.billing.orm import InvoiceModel

from mealbox_batch.domain.types import JobType, OrderGenerationJobResult
from mealbox_batch.jobs.base import BaseJobDefinition, JobContext, parse_cursor


class OrderGenerationJob(BaseJobDefinition):
    job_type = JobType.ORDER_GENERATION
    description = "Generate meal orders for paid invoices"
    result_type = OrderGenerationJobResult

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[InvoiceModel]:
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.status == InvoiceStatus.PAID.value,
                InvoiceModel.orders_generated_at.is_(None),
            )
            .order_by(InvoiceModel.id)
            .limit(batch_size)
        )
        after = parse_cursor(cursor)
        if after is not None:
            stmt = stmt.where(InvoiceModel.id > after)
        return list(context.session.execute(stmt).scalars().all())

    def process_item(self, context: JobContext, invoice: InvoiceModel) -> None:
        outcome = context.services.orders.generate_orders_for_invoice(
            invoice.id, actor_id=context.actor_id,
        )
        stats = context.stats
        if outcome.already_generated:
            stats.bump("invoices_skipped")
            return
        stats.bump("invoices_generated")
        stats.bump("orders_created", outcome.orders_created)
        stats.bump("holiday_credits", outcome.holiday_credits)
        stats.bump("capacity_credits", outcome.capacity_credits)
