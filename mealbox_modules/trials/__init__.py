"""
Trials Module.

Short fixed-length vendor trials that complete once their end date passes.
"""

from mealbox_modules.trials.models import Trial, TrialStatus

__all__ = ["Trial", "TrialStatus"]
