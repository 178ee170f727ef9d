"""
mealbox_batch.domain.types -- Pure frozen dataclasses for the job system.

ZERO I/O.  Job records, log lines, the continuation payload and the
typed per-job results that are persisted as JSON on the job record.

Invariants enforced:
    - Job DTOs are frozen (immutable snapshots of a row).
    - ``JobPayload`` round-trips through JSON; unknown keys are preserved
      in ``extra`` so a newer payload survives an older runner.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class JobType(str, Enum):
    """Registered background job types."""

    RENEWAL_WEEKLY = "renewal_weekly"
    RENEWAL_MONTHLY = "renewal_monthly"
    PAYMENT_RETRY = "payment_retry"
    CREDIT_EXPIRY = "credit_expiry"
    ORDER_GENERATION = "order_generation"
    TRIAL_COMPLETION = "trial_completion"
    PAUSE_AUTO_CANCEL = "pause_auto_cancel"


class JobStatus(str, Enum):
    """Job-level lifecycle status."""

    PENDING = "pending"  # Created, not yet started
    RUNNING = "running"  # Execution in progress
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

ALLOWED_JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobLogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# =============================================================================
# Job DTOs
# =============================================================================


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of a job record."""

    id: UUID
    job_type: JobType
    status: JobStatus
    payload: dict[str, Any] = field(default_factory=dict)
    result: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    scheduled_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass(frozen=True)
class JobLog:
    """One append-only audit line of a job."""

    id: UUID
    job_id: UUID
    level: JobLogLevel
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(frozen=True)
class JobPayload:
    """Continuation marker carried in ``Job.payload``.

    ``batch_number`` is the index of the next batch to run; ``cursor`` is
    the id of the last item of the previous batch (keyset pagination).
    ``as_of`` is the instant the interrupted run was evaluated at; the
    cursor is only meaningful against that instant.
    """

    batch_number: int = 0
    is_continuation: bool = False
    cursor: str | None = None
    as_of: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update(
            batch_number=self.batch_number,
            is_continuation=self.is_continuation,
            cursor=self.cursor,
        )
        if self.as_of is not None:
            data["as_of"] = self.as_of.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JobPayload:
        data = dict(data or {})
        batch_number = int(data.pop("batch_number", 0) or 0)
        is_continuation = bool(data.pop("is_continuation", False))
        cursor = data.pop("cursor", None)
        as_of = data.pop("as_of", None)
        return cls(
            batch_number=batch_number,
            is_continuation=is_continuation,
            cursor=str(cursor) if cursor is not None else None,
            as_of=datetime.fromisoformat(as_of) if as_of else None,
            extra=data,
        )


# =============================================================================
# Results
# =============================================================================


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Counter):
        return {str(k): v for k, v in sorted(value.items())}
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class JobResult:
    """Fields every job result carries."""

    processed: int = 0
    errors: int = 0
    batches: int = 0
    has_more: bool = False
    next_batch_number: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {f.name: _jsonable(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class RenewalJobResult(JobResult):
    invoices_created: int = 0
    invoices_reused: int = 0
    zero_amount_paid: int = 0
    mandate_charged: int = 0
    mandate_failed: int = 0
    manual_orders: int = 0
    already_submitted: int = 0


@dataclass(frozen=True)
class PaymentRetryJobResult(JobResult):
    retried: int = 0
    paused: int = 0
    waiting: int = 0


@dataclass(frozen=True)
class CreditExpiryJobResult(JobResult):
    expired: int = 0
    expired_by_slot: dict[str, int] = field(default_factory=dict)
    expired_by_reason: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderGenerationJobResult(JobResult):
    invoices_generated: int = 0
    invoices_skipped: int = 0
    orders_created: int = 0
    holiday_credits: int = 0
    capacity_credits: int = 0


@dataclass(frozen=True)
class TrialCompletionJobResult(JobResult):
    completed: int = 0
    completed_by_vendor: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class AutoCancelJobResult(JobResult):
    cancelled: int = 0
    credits_converted: int = 0
    global_credit_amount: Decimal = Decimal("0.00")
    notifications_sent: int = 0


@dataclass(frozen=True)
class JobRunResult:
    """What one trigger invocation returns to its caller."""

    job_id: UUID
    job_type: JobType
    status: JobStatus
    result: dict[str, Any]
    continuation_job_id: UUID | None = None

    @property
    def has_more(self) -> bool:
        return bool(self.result.get("has_more"))

    @property
    def next_batch_number(self) -> int | None:
        return self.result.get("next_batch_number")
