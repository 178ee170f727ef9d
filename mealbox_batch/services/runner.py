"""
JobRunner -- bounded-time batch loop with explicit continuation.

Contract:
    ``run(definition, settings)`` performs one trigger invocation of a job
    type:

    1. Refuse to start while another job of the type holds a live lease.
    2. Resume the oldest pending continuation job, else create a new job;
       take the lease and start the job (committed before any work).
    3. Loop: stop with a continuation job once ``max_duration_seconds`` has
       elapsed on the clock; fetch the next page after the cursor; process
       it; commit; advance cursor and batch number; a short page ends the
       loop.  Single-pass jobs run one page only.

       A continuation resumes at the instant its run was evaluated at
       (``JobPayload.as_of``), so its cursor walks the same set of items.
       When that earlier run date is exhausted the loop starts again from
       the first item at the current time.
    4. Complete the job with the definition's typed result and release
       the lease.

Architecture: mealbox_batch/services.  The runner is the only place in
    the engine that commits, directly or through ``JobContext.checkpoint``
    which it wires to the session.

Invariants enforced:
    - A committed batch survives any later failure of the same run.
    - On an unhandled exception the uncommitted batch is rolled back, the
      job is failed and logged at error level, the lease is released, and
      the exception is re-raised to the trigger.
    - Continuation is explicit: the result carries ``has_more`` and
      ``next_batch_number`` and a pending continuation job exists.
    - A continuation picked up on a later day never skips the items left
      over from its own day, nor the items due today.
"""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from mealbox_config.schema import JobSettings
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.logging_config import LogContext, get_logger

from mealbox_batch.domain.types import (
    Job,
    JobLogLevel,
    JobPayload,
    JobRunResult,
    JobStatus,
)
from mealbox_batch.jobs.base import JobContext, JobDefinition, JobServices, RunStats
from mealbox_batch.services.job_engine import JobEngine

logger = get_logger("batch.runner")


class JobRunner:
    """Runs one job definition for one trigger invocation."""

    def __init__(
        self,
        session: Session,
        services: JobServices,
        clock: Clock | None = None,
        engine: JobEngine | None = None,
        lease_grace_seconds: int = 60,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ):
        self._session = session
        self._services = services
        self._clock = clock or SystemClock()
        self._actor_id = actor_id
        self._engine = engine or JobEngine(session, self._clock, actor_id)
        self._lease_grace = timedelta(seconds=lease_grace_seconds)

    @property
    def engine(self) -> JobEngine:
        return self._engine

    def run(self, definition: JobDefinition, settings: JobSettings) -> JobRunResult:
        job_type = definition.job_type
        self._engine.ensure_lease_free(job_type)

        job = self._engine.next_pending_continuation(job_type)
        if job is None:
            job = self._engine.create_job(job_type)
        ttl = timedelta(seconds=settings.max_duration_seconds) + self._lease_grace
        self._engine.acquire_lease(job_type, job.id, ttl)
        job = self._engine.start_job(job.id)
        self._session.commit()

        with LogContext.bind(
            correlation_id=str(uuid4()),
            job_id=str(job.id),
            job_type=job_type.value,
            actor_id=str(self._actor_id),
        ):
            try:
                return self._execute(definition, job, settings)
            except Exception as exc:
                self._session.rollback()
                self._engine.fail_job(job.id, str(exc))
                self._engine.log_job(job.id, JobLogLevel.ERROR, "job_failed", {
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                })
                self._engine.release_lease(job_type, job.id)
                self._session.commit()
                logger.error("job_run_failed", exc_info=True, extra={
                    "job_id": str(job.id),
                    "job_type": job_type.value,
                })
                raise

    def _execute(
        self, definition: JobDefinition, job: Job, settings: JobSettings,
    ) -> JobRunResult:
        job_type = definition.job_type
        payload = JobPayload.from_dict(job.payload)
        started = self._clock.now()
        context = JobContext(
            session=self._session,
            clock=self._clock,
            engine=self._engine,
            job=job,
            settings=settings,
            services=self._services,
            actor_id=self._actor_id,
            as_of=payload.as_of or started,
            stats=RunStats(),
            on_checkpoint=self._session.commit,
        )
        context.log(
            JobLogLevel.INFO, "job_started",
            batch_number=payload.batch_number,
            is_continuation=payload.is_continuation,
            cursor=payload.cursor,
            as_of=context.as_of.isoformat(),
        )
        definition.prepare(context)

        cursor = payload.cursor
        batch_number = payload.batch_number
        has_more = False
        continuation: Job | None = None
        max_duration = timedelta(seconds=settings.max_duration_seconds)

        while True:
            elapsed = self._clock.now() - started
            if not settings.single_pass and elapsed > max_duration:
                context.log(
                    JobLogLevel.WARNING, "max_duration_reached",
                    elapsed_seconds=elapsed.total_seconds(),
                    next_batch_number=batch_number,
                )
                continuation = self._engine.create_continuation_job(
                    job_type, batch_number, {"cursor": cursor}, as_of=context.as_of,
                )
                has_more = True
                break

            items = definition.fetch_batch(context, cursor, settings.batch_size)
            if items:
                definition.process_batch(context, items)
                context.stats.batches += 1
                cursor = definition.cursor_of(items[-1])
                batch_number += 1
                context.log(
                    JobLogLevel.INFO, "batch_completed",
                    batch_number=batch_number - 1,
                    items=len(items),
                    processed=context.stats.processed,
                    errors=context.stats.errors,
                )
                self._session.commit()
                if settings.single_pass:
                    break
                if len(items) == settings.batch_size:
                    continue

            # the interrupted run's date is finished; today's items start a fresh pass
            if context.run_date < self._clock.today():
                context.log(
                    JobLogLevel.INFO, "run_date_rolled_forward",
                    finished_run_date=context.run_date.isoformat(),
                    run_date=self._clock.today().isoformat(),
                )
                context.as_of = self._clock.now()
                cursor = None
                continue
            break

        result = definition.build_result(
            context.stats, has_more, batch_number if has_more else None,
        )
        self._engine.complete_job(job.id, result.to_dict())
        self._engine.release_lease(job_type, job.id)
        self._session.commit()

        logger.info("job_run_finished", extra={
            "job_id": str(job.id),
            "job_type": job_type.value,
            "processed": context.stats.processed,
            "errors": context.stats.errors,
            "has_more": has_more,
        })
        return JobRunResult(
            job_id=job.id,
            job_type=job_type,
            status=JobStatus.COMPLETED,
            result=result.to_dict(),
            continuation_job_id=continuation.id if continuation else None,
        )
