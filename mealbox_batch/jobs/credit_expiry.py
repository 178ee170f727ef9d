"""
Credit-expiry job.

Marks available credits past ``expires_at`` as expired, one page at a
time.  Expiry is a status change only; consumed quantities and invoices
are left alone.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import select

from mealbox_modules.credits.models import CreditStatus
from mealbox_modules.credits.orm import CreditModel

from mealbox_batch.domain.types import CreditExpiryJobResult, JobType
from mealbox_batch.jobs.base import BaseJobDefinition, JobContext, RunStats, parse_cursor


class CreditExpiryJob(BaseJobDefinition):
    job_type = JobType.CREDIT_EXPIRY
    description = "Expire unused meal credits"
    result_type = CreditExpiryJobResult

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[CreditModel]:
        stmt = (
            select(CreditModel)
            .where(
                CreditModel.status == CreditStatus.AVAILABLE.value,
                CreditModel.expires_at < context.as_of,
            )
            .order_by(CreditModel.id)
            .limit(batch_size)
        )
        after = parse_cursor(cursor)
        if after is not None:
            stmt = stmt.where(CreditModel.id > after)
        return list(context.session.execute(stmt).scalars().all())

    def process_batch(self, context: JobContext, items: Sequence[CreditModel]) -> None:
        expired = context.services.credits.expire_credits(
            context.as_of,
            credit_ids=[credit.id for credit in items],
            actor_id=context.actor_id,
        )
        stats = context.stats
        by_slot = stats.breakdown("expired_by_slot")
        by_reason = stats.breakdown("expired_by_reason")
        for credit in expired:
            by_slot[str(credit.slot)] += 1
            by_reason[credit.reason.value] += 1
        stats.processed += len(items)
        stats.bump("expired", len(expired))

    def result_fields(self, stats: RunStats) -> dict[str, Any]:
        return {
            "expired": stats.counts["expired"],
            "expired_by_slot": dict(stats.breakdown("expired_by_slot")),
            "expired_by_reason": dict(stats.breakdown("expired_by_reason")),
        }
