"""
Trial-completion job.

Completes active trials whose end date has passed, a page at a time.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sqlalchemy import select

from mealbox_modules.trials.models import TrialStatus
from mealbox_modules.trials.orm import TrialModel

from mealbox_batch.domain.types import JobType, TrialCompletionJobResult
from mealbox_batch.jobs.base import BaseJobDefinition, JobContext, RunStats, parse_cursor


class TrialCompletionJob(BaseJobDefinition):
    job_type = JobType.TRIAL_COMPLETION
    description = "Complete trials that reached their end date"
    result_type = TrialCompletionJobResult

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[TrialModel]:
        stmt = (
            select(TrialModel)
            .where(
                TrialModel.status == TrialStatus.ACTIVE.value,
                TrialModel.end_date <= context.run_date,
            )
            .order_by(TrialModel.id)
            .limit(batch_size)
        )
        after = parse_cursor(cursor)
        if after is not None:
            stmt = stmt.where(TrialModel.id > after)
        return list(context.session.execute(stmt).scalars().all())

    def process_batch(self, context: JobContext, items: Sequence[TrialModel]) -> None:
        by_vendor = context.services.trials.complete_trials(
            [trial.id for trial in items], context.run_date, actor_id=context.actor_id,
        )
        context.stats.breakdown("completed_by_vendor").update(by_vendor)
        context.stats.bump("completed", sum(by_vendor.values()))
        context.stats.processed += len(items)

    def result_fields(self, stats: RunStats) -> dict[str, Any]:
        return {
            "completed": stats.counts["completed"],
            "completed_by_vendor": dict(stats.breakdown("completed_by_vendor")),
        }
