"""Background job definitions."""

from mealbox_batch.jobs.auto_cancel import AutoCancelPausedJob, send_auto_cancel_warnings
from mealbox_batch.jobs.base import (
    BaseJobDefinition,
    JobContext,
    JobDefinition,
    JobRegistry,
    JobServices,
    RunStats,
)
from mealbox_batch.jobs.credit_expiry import CreditExpiryJob
from mealbox_batch.jobs.order_generation import OrderGenerationJob
from mealbox_batch.jobs.payment_retry import PaymentRetryJob
from mealbox_batch.jobs.renewal import RenewalJob
from mealbox_batch.jobs.trial_completion import TrialCompletionJob

__all__ = [
    "AutoCancelPausedJob",
    "BaseJobDefinition",
    "CreditExpiryJob",
    "JobContext",
    "JobDefinition",
    "JobRegistry",
    "JobServices",
    "OrderGenerationJob",
    "PaymentRetryJob",
    "RenewalJob",
    "RunStats",
    "TrialCompletionJob",
    "send_auto_cancel_warnings",
]
