"""ORM models for job persistence."""

from mealbox_batch.models.job import JobLeaseModel, JobLogModel, JobModel

__all__ = ["JobLeaseModel", "JobLogModel", "JobModel"]
