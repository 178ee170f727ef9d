"""
JobEngine -- job record lifecycle, audit log and run lease.

Contract:
    Owns every write to ``jobs``, ``job_logs`` and ``job_leases``.  Job
    definitions never touch those tables; they talk to the runner, which
    talks to the engine.

Architecture: mealbox_batch/services.  Imports from mealbox_batch.domain,
    mealbox_batch.models and the kernel.

Invariants enforced:
    - Status moves follow ``ALLOWED_JOB_TRANSITIONS``; terminal jobs
      (completed / failed / cancelled) are immutable.
    - A continuation is always a new job record, never an edit of the
      job that timed out.
    - ``log_job`` never raises into its caller: the log row is written in
      its own SAVEPOINT and a failure is reported through the Python
      logger only.
    - One live lease per job type; an expired lease may be taken over.
    - All timestamps from the injected Clock.

Failure modes:
    - JobNotFoundError for unknown ids.
    - InvalidJobTransitionError for moves out of terminal states.
    - JobRetryNotAllowedError when retrying a non-failed or exhausted job.
    - JobAlreadyRunningError when a live lease is held by another job.

Does NOT call ``session.commit()`` -- the runner controls boundaries.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.exceptions import (
    InvalidJobTransitionError,
    JobAlreadyRunningError,
    JobNotFoundError,
    JobRetryNotAllowedError,
)
from mealbox_kernel.logging_config import get_logger

from mealbox_batch.domain.types import (
    ALLOWED_JOB_TRANSITIONS,
    Job,
    JobLog,
    JobLogLevel,
    JobPayload,
    JobStatus,
    JobType,
)
from mealbox_batch.models.job import JobLeaseModel, JobLogModel, JobModel

logger = get_logger("batch.job_engine")


class JobEngine:
    """Job lifecycle over one session."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._actor_id = actor_id

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _job_row(self, job_id: UUID) -> JobModel:
        row = self._session.get(JobModel, job_id)
        if row is None:
            raise JobNotFoundError(str(job_id))
        return row

    def get_job(self, job_id: UUID) -> Job:
        return self._job_row(job_id).to_dto()

    def get_job_logs(self, job_id: UUID, limit: int = 1000) -> list[JobLog]:
        """Log lines of a job, newest first."""
        rows = self._session.execute(
            select(JobLogModel)
            .where(JobLogModel.job_id == job_id)
            .order_by(JobLogModel.created_at.desc())
            .limit(limit)
        ).scalars().all()
        return [row.to_dto() for row in rows]

    def list_jobs(
        self,
        job_type: JobType | str | None = None,
        status: JobStatus | str | None = None,
        limit: int = 100,
    ) -> list[Job]:
        stmt = select(JobModel).order_by(JobModel.created_at.desc()).limit(limit)
        if job_type is not None:
            stmt = stmt.where(JobModel.job_type == JobType(job_type).value)
        if status is not None:
            stmt = stmt.where(JobModel.status == JobStatus(status).value)
        return [row.to_dto() for row in self._session.execute(stmt).scalars().all()]

    def next_pending_continuation(self, job_type: JobType | str) -> Job | None:
        """Oldest pending continuation job of the type, if any."""
        rows = self._session.execute(
            select(JobModel)
            .where(
                JobModel.job_type == JobType(job_type).value,
                JobModel.status == JobStatus.PENDING.value,
            )
            .order_by(JobModel.created_at, JobModel.id)
        ).scalars().all()
        for row in rows:
            if JobPayload.from_dict(row.payload).is_continuation:
                return row.to_dto()
        return None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _transition(self, row: JobModel, target: JobStatus) -> None:
        current = JobStatus(row.status)
        if target not in ALLOWED_JOB_TRANSITIONS[current]:
            raise InvalidJobTransitionError(str(row.id), current.value, target.value)
        row.status = target.value
        row.updated_by_id = self._actor_id

    def create_job(
        self,
        job_type: JobType | str,
        payload: dict[str, Any] | None = None,
        max_retries: int = 3,
        scheduled_at: datetime | None = None,
        retry_count: int = 0,
    ) -> Job:
        now = self._clock.now()
        row = JobModel(
            job_type=JobType(job_type).value,
            status=JobStatus.PENDING.value,
            payload=JobPayload.from_dict(payload).to_dict(),
            retry_count=retry_count,
            max_retries=max_retries,
            scheduled_at=scheduled_at or now,
            created_at=now,
            created_by_id=self._actor_id,
        )
        self._session.add(row)
        self._session.flush()
        logger.info("job_created", extra={
            "job_id": str(row.id),
            "job_type": row.job_type,
            "payload": row.payload,
        })
        return row.to_dto()

    def start_job(self, job_id: UUID) -> Job:
        row = self._job_row(job_id)
        self._transition(row, JobStatus.RUNNING)
        row.started_at = self._clock.now()
        self._session.flush()
        logger.info("job_started", extra={"job_id": str(row.id), "job_type": row.job_type})
        return row.to_dto()

    def complete_job(self, job_id: UUID, result: dict[str, Any] | None = None) -> Job:
        row = self._job_row(job_id)
        self._transition(row, JobStatus.COMPLETED)
        row.result = result or {}
        row.completed_at = self._clock.now()
        self._session.flush()
        logger.info("job_completed", extra={
            "job_id": str(row.id),
            "job_type": row.job_type,
            "result": row.result,
        })
        return row.to_dto()

    def fail_job(self, job_id: UUID, error_message: str) -> Job:
        row = self._job_row(job_id)
        self._transition(row, JobStatus.FAILED)
        row.error_message = error_message
        row.completed_at = self._clock.now()
        self._session.flush()
        logger.error("job_failed", extra={
            "job_id": str(row.id),
            "job_type": row.job_type,
            "error": error_message,
        })
        return row.to_dto()

    def cancel_job(self, job_id: UUID, reason: str | None = None) -> Job:
        row = self._job_row(job_id)
        self._transition(row, JobStatus.CANCELLED)
        row.error_message = reason
        row.completed_at = self._clock.now()
        self._session.flush()
        self.log_job(row.id, JobLogLevel.WARNING, "job_cancelled", {"reason": reason})
        return row.to_dto()

    def retry_job(self, job_id: UUID) -> Job:
        """Re-queue a failed job as a new pending job with ``retry_count + 1``."""
        row = self._job_row(job_id)
        if row.status != JobStatus.FAILED.value or row.retry_count >= row.max_retries:
            raise JobRetryNotAllowedError(
                str(job_id), row.status, row.retry_count, row.max_retries,
            )
        retry = self.create_job(
            row.job_type,
            payload=row.payload,
            max_retries=row.max_retries,
            retry_count=row.retry_count + 1,
        )
        self.log_job(row.id, JobLogLevel.INFO, "job_retried", {
            "retry_job_id": str(retry.id),
            "retry_count": retry.retry_count,
        })
        return retry

    def create_continuation_job(
        self,
        job_type: JobType | str,
        next_batch_number: int,
        payload: dict[str, Any] | None = None,
        as_of: datetime | None = None,
    ) -> Job:
        """New pending job that resumes at ``next_batch_number``.

        ``as_of`` pins the instant the resumed run is evaluated at.
        """
        base = JobPayload.from_dict(payload)
        continuation = JobPayload(
            batch_number=next_batch_number,
            is_continuation=True,
            cursor=base.cursor,
            as_of=as_of or base.as_of,
            extra=base.extra,
        )
        return self.create_job(job_type, payload=continuation.to_dict())

    # -------------------------------------------------------------------------
    # Audit log
    # -------------------------------------------------------------------------

    def log_job(
        self,
        job_id: UUID,
        level: JobLogLevel | str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> JobLog | None:
        """Append a log line; returns None (and never raises) if it cannot be written."""
        savepoint = self._session.begin_nested()
        try:
            row = JobLogModel(
                job_id=job_id,
                level=JobLogLevel(level).value,
                message=message,
                log_metadata=metadata or {},
                created_at=self._clock.now(),
                created_by_id=self._actor_id,
            )
            self._session.add(row)
            self._session.flush()
            savepoint.commit()
        except Exception:
            savepoint.rollback()
            logger.warning("job_log_write_failed", exc_info=True, extra={
                "job_id": str(job_id),
                "log_message": message,
            })
            return None
        return row.to_dto()

    # -------------------------------------------------------------------------
    # Lease
    # -------------------------------------------------------------------------

    def _lease_row(self, job_type: JobType | str) -> JobLeaseModel | None:
        return self._session.execute(
            select(JobLeaseModel)
            .where(JobLeaseModel.job_type == JobType(job_type).value)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def ensure_lease_free(self, job_type: JobType | str, job_id: UUID | None = None) -> None:
        """Raise JobAlreadyRunningError if another job holds a live lease."""
        lease = self._lease_row(job_type)
        if lease is not None and lease.is_live(self._clock.now()) and lease.holder_job_id != job_id:
            raise JobAlreadyRunningError(JobType(job_type).value, str(lease.holder_job_id))

    def acquire_lease(self, job_type: JobType | str, job_id: UUID, ttl: timedelta) -> None:
        job_type = JobType(job_type)
        self.ensure_lease_free(job_type, job_id)
        now = self._clock.now()
        lease = self._lease_row(job_type)
        if lease is not None:
            lease.holder_job_id = job_id
            lease.acquired_at = now
            lease.expires_at = now + ttl
            lease.updated_by_id = self._actor_id
            self._session.flush()
            return

        savepoint = self._session.begin_nested()
        try:
            self._session.add(JobLeaseModel(
                job_type=job_type.value,
                holder_job_id=job_id,
                acquired_at=now,
                expires_at=now + ttl,
                created_at=now,
                created_by_id=self._actor_id,
            ))
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise JobAlreadyRunningError(job_type.value, "unknown") from None
        logger.debug("lease_acquired", extra={
            "job_type": job_type.value,
            "holder_job_id": str(job_id),
        })

    def release_lease(self, job_type: JobType | str, job_id: UUID) -> None:
        """Release the lease if ``job_id`` still holds it."""
        lease = self._lease_row(job_type)
        if lease is None or lease.holder_job_id != job_id:
            return
        lease.holder_job_id = None
        lease.expires_at = self._clock.now()
        lease.updated_by_id = self._actor_id
        self._session.flush()
