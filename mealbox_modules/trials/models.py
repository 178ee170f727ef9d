"""
Trial Domain Models (``mealbox_modules.trials.models``).

A trial is a short, fixed-length tasting period with one vendor.  Trials
complete automatically once their end date has passed.
"""

from dataclasses import dataclass
from datetime import date
from enum import Enum
from uuid import UUID


class TrialStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Trial:
    id: UUID
    consumer_id: UUID
    vendor_id: UUID
    status: TrialStatus
    start_date: date
    end_date: date

    def __post_init__(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date cannot be before start_date")
