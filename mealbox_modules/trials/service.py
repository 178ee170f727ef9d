"""
Trial Service - create, cancel and complete vendor trials.

The Trial-Completion job calls ``complete_trials`` with the ids of one
fetched page; everything else is request-time CRUD.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import InvalidStatusTransitionError
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.trials.models import Trial, TrialStatus
from mealbox_modules.trials.orm import TrialModel

logger = get_logger("modules.trials.service")


class TrialService:
    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def create_trial(
        self,
        consumer_id: UUID,
        vendor_id: UUID,
        start_date: date,
        end_date: date,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Trial:
        if end_date < start_date:
            raise ValueError("end_date cannot be before start_date")
        row = TrialModel(
            consumer_id=consumer_id,
            vendor_id=vendor_id,
            status=TrialStatus.ACTIVE.value,
            start_date=start_date,
            end_date=end_date,
            created_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(row)
        self._session.flush()
        logger.info("trial_created", extra={
            "trial_id": str(row.id),
            "vendor_id": str(vendor_id),
            "end_date": end_date.isoformat(),
        })
        return row.to_dto()

    def get_trial(self, trial_id: UUID) -> Trial | None:
        row = self._session.get(TrialModel, trial_id)
        return row.to_dto() if row is not None else None

    def cancel_trial(self, trial_id: UUID, actor_id: UUID = SYSTEM_ACTOR_ID) -> Trial:
        row = self._session.get(TrialModel, trial_id)
        if row is None:
            raise LookupError(f"Trial not found: {trial_id}")
        if row.status != TrialStatus.ACTIVE.value:
            raise InvalidStatusTransitionError(
                "trial", str(trial_id), row.status, TrialStatus.CANCELLED.value,
            )
        row.status = TrialStatus.CANCELLED.value
        row.updated_by_id = actor_id
        self._session.flush()
        return row.to_dto()

    def complete_trials(
        self,
        trial_ids: Sequence[UUID],
        as_of: date,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Counter:
        """
        Complete the given active trials whose ``end_date <= as_of``.

        Returns completions per vendor id (str).  Trials already completed
        or cancelled are left alone, so re-running a page is harmless.
        """
        if not trial_ids:
            return Counter()
        rows = self._session.execute(
            select(TrialModel).where(
                TrialModel.id.in_(list(trial_ids)),
                TrialModel.status == TrialStatus.ACTIVE.value,
                TrialModel.end_date <= as_of,
            )
        ).scalars().all()
        now = self._clock.now()
        by_vendor: Counter = Counter()
        for row in rows:
            row.status = TrialStatus.COMPLETED.value
            row.completed_at = now
            row.updated_by_id = actor_id
            by_vendor[str(row.vendor_id)] += 1
        self._session.flush()
        return by_vendor
