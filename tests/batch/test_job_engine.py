"""
Tests for mealbox_batch.services.job_engine.

Job lifecycle, retries, continuations, the audit log and the run lease.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from mealbox_batch.domain.types import JobLogLevel, JobPayload, JobStatus, JobType
from mealbox_batch.services.job_engine import JobEngine
from mealbox_kernel.exceptions import (
    InvalidJobTransitionError,
    JobAlreadyRunningError,
    JobNotFoundError,
    JobRetryNotAllowedError,
)


@pytest.fixture
def job_engine(session, clock):
    return JobEngine(session, clock)


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:

    def test_pending_running_completed(self, job_engine, clock):
        job = job_engine.create_job(JobType.CREDIT_EXPIRY)
        assert job.status is JobStatus.PENDING
        assert job.payload == {"batch_number": 0, "is_continuation": False, "cursor": None}

        job_engine.start_job(job.id)
        clock.advance(30)
        done = job_engine.complete_job(job.id, {"processed": 3})

        assert done.status is JobStatus.COMPLETED
        assert done.result == {"processed": 3}
        assert done.completed_at - done.started_at == timedelta(seconds=30)
        assert done.is_terminal

    def test_terminal_jobs_are_immutable(self, job_engine):
        job = job_engine.create_job("payment_retry")
        job_engine.start_job(job.id)
        job_engine.fail_job(job.id, "boom")
        with pytest.raises(InvalidJobTransitionError):
            job_engine.start_job(job.id)
        with pytest.raises(InvalidJobTransitionError):
            job_engine.complete_job(job.id)

    def test_pending_job_cannot_complete(self, job_engine):
        job = job_engine.create_job("payment_retry")
        with pytest.raises(InvalidJobTransitionError):
            job_engine.complete_job(job.id)

    def test_cancel_records_reason(self, job_engine):
        job = job_engine.create_job("trial_completion")
        cancelled = job_engine.cancel_job(job.id, "operator request")
        assert cancelled.status is JobStatus.CANCELLED
        assert cancelled.error_message == "operator request"
        assert job_engine.get_job_logs(job.id)[0].message == "job_cancelled"

    def test_unknown_job(self, job_engine):
        with pytest.raises(JobNotFoundError):
            job_engine.get_job(uuid4())

    def test_list_jobs_filters(self, job_engine):
        first = job_engine.create_job("credit_expiry")
        job_engine.create_job("order_generation")
        job_engine.start_job(first.id)

        running = job_engine.list_jobs(status="running")
        assert [j.id for j in running] == [first.id]
        assert len(job_engine.list_jobs(job_type=JobType.ORDER_GENERATION)) == 1


class TestRetry:

    def test_failed_job_requeued_with_bumped_count(self, job_engine):
        job = job_engine.create_job("order_generation", max_retries=2)
        job_engine.start_job(job.id)
        job_engine.fail_job(job.id, "db gone")

        retry = job_engine.retry_job(job.id)

        assert retry.id != job.id
        assert retry.status is JobStatus.PENDING
        assert retry.retry_count == 1
        assert job_engine.get_job(job.id).status is JobStatus.FAILED

    def test_exhausted_retries_rejected(self, job_engine):
        job = job_engine.create_job("order_generation", max_retries=1, retry_count=1)
        job_engine.start_job(job.id)
        job_engine.fail_job(job.id, "db gone")
        with pytest.raises(JobRetryNotAllowedError):
            job_engine.retry_job(job.id)

    def test_only_failed_jobs_retry(self, job_engine):
        job = job_engine.create_job("order_generation")
        with pytest.raises(JobRetryNotAllowedError):
            job_engine.retry_job(job.id)


class TestContinuation:

    def test_continuation_is_a_new_pending_job(self, job_engine):
        job = job_engine.create_job("renewal_weekly")
        job_engine.start_job(job.id)

        continuation = job_engine.create_continuation_job(
            "renewal_weekly", 3, {"cursor": "abc", "note": "kept"},
        )

        payload = JobPayload.from_dict(continuation.payload)
        assert continuation.id != job.id
        assert (payload.batch_number, payload.is_continuation, payload.cursor) == (3, True, "abc")
        assert payload.extra == {"note": "kept"}
        assert job_engine.next_pending_continuation("renewal_weekly").id == continuation.id

    def test_plain_pending_job_is_not_a_continuation(self, job_engine):
        job_engine.create_job("renewal_weekly")
        assert job_engine.next_pending_continuation("renewal_weekly") is None

    def test_oldest_continuation_first(self, job_engine, clock):
        first = job_engine.create_continuation_job("credit_expiry", 1)
        clock.advance(5)
        job_engine.create_continuation_job("credit_expiry", 2)
        assert job_engine.next_pending_continuation("credit_expiry").id == first.id


# =============================================================================
# Audit log
# =============================================================================


class TestJobLog:

    def test_logs_newest_first(self, job_engine, clock):
        job = job_engine.create_job("credit_expiry")
        job_engine.log_job(job.id, JobLogLevel.INFO, "job_started")
        clock.advance(1)
        job_engine.log_job(job.id, "warning", "max_duration_reached", {"elapsed_seconds": 301.0})

        logs = job_engine.get_job_logs(job.id)
        assert [log.message for log in logs] == ["max_duration_reached", "job_started"]
        assert logs[0].level is JobLogLevel.WARNING
        assert logs[0].metadata == {"elapsed_seconds": 301.0}

    def test_log_failure_does_not_raise(self, job_engine, captured_logs):
        job = job_engine.create_job("credit_expiry")
        assert job_engine.log_job(job.id, "not-a-level", "oops") is None
        assert any(r["message"] == "job_log_write_failed" for r in captured_logs())


# =============================================================================
# Lease
# =============================================================================


class TestLease:

    def test_live_lease_blocks_other_jobs(self, job_engine):
        holder = job_engine.create_job("payment_retry")
        other = job_engine.create_job("payment_retry")
        job_engine.acquire_lease("payment_retry", holder.id, timedelta(minutes=6))

        with pytest.raises(JobAlreadyRunningError):
            job_engine.acquire_lease("payment_retry", other.id, timedelta(minutes=6))
        job_engine.ensure_lease_free("payment_retry", holder.id)
        # other job types are independent
        job_engine.ensure_lease_free("credit_expiry")

    def test_released_lease_can_be_taken(self, job_engine):
        holder = job_engine.create_job("payment_retry")
        other = job_engine.create_job("payment_retry")
        job_engine.acquire_lease("payment_retry", holder.id, timedelta(minutes=6))
        job_engine.release_lease("payment_retry", holder.id)
        job_engine.acquire_lease("payment_retry", other.id, timedelta(minutes=6))

    def test_expired_lease_taken_over(self, job_engine, clock):
        holder = job_engine.create_job("payment_retry")
        other = job_engine.create_job("payment_retry")
        job_engine.acquire_lease("payment_retry", holder.id, timedelta(minutes=6))
        clock.advance(361)
        job_engine.acquire_lease("payment_retry", other.id, timedelta(minutes=6))
        with pytest.raises(JobAlreadyRunningError):
            job_engine.ensure_lease_free("payment_retry", holder.id)

    def test_release_by_non_holder_is_ignored(self, job_engine):
        holder = job_engine.create_job("payment_retry")
        job_engine.acquire_lease("payment_retry", holder.id, timedelta(minutes=6))
        job_engine.release_lease("payment_retry", uuid4())
        with pytest.raises(JobAlreadyRunningError):
            job_engine.ensure_lease_free("payment_retry")
