"""
ORM models for job persistence.

Contract:
    JobModel, JobLogModel and JobLeaseModel persist job records, their
    append-only audit log and the per-job-type run lease.  Records map to
    the frozen DTOs in ``mealbox_batch.domain.types`` via ``to_dto()``.

Architecture: mealbox_batch/models.  Imports from mealbox_kernel.db.base only.

Invariants enforced:
    - One lease row per job type (UNIQUE ``job_type``).
    - Log rows are only ever inserted.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mealbox_kernel.db.base import TrackedBase

if TYPE_CHECKING:
    from mealbox_batch.domain.types import Job, JobLog


class JobModel(TrackedBase):
    """Persistent job record."""

    __tablename__ = "jobs"

    __table_args__ = (
        Index("ix_jobs_type_status", "job_type", "status"),
        Index("ix_jobs_created_at", "created_at"),
    )

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def to_dto(self) -> Job:
        from mealbox_batch.domain.types import Job, JobStatus, JobType

        return Job(
            id=self.id,
            job_type=JobType(self.job_type),
            status=JobStatus(self.status),
            payload=dict(self.payload or {}),
            result=dict(self.result) if self.result is not None else None,
            error_message=self.error_message,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            scheduled_at=self.scheduled_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            created_at=self.created_at,
        )


class JobLogModel(TrackedBase):
    """Append-only audit line for a job."""

    __tablename__ = "job_logs"

    __table_args__ = (
        Index("ix_job_logs_job_created", "job_id", "created_at"),
    )

    job_id: Mapped[UUID] = mapped_column(
        ForeignKey("jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    # "metadata" is reserved on declarative classes
    log_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def to_dto(self) -> JobLog:
        from mealbox_batch.domain.types import JobLog, JobLogLevel

        return JobLog(
            id=self.id,
            job_id=self.job_id,
            level=JobLogLevel(self.level),
            message=self.message,
            metadata=dict(self.log_metadata or {}),
            created_at=self.created_at,
        )


class JobLeaseModel(TrackedBase):
    """Run lease: at most one live holder per job type."""

    __tablename__ = "job_leases"

    job_type: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    holder_job_id: Mapped[UUID | None] = mapped_column(nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)

    def is_live(self, now: datetime) -> bool:
        return self.holder_job_id is not None and self.expires_at > now
