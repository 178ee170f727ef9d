"""
Pure domain layer.

No ORM, no database, no I/O.  The clock is the only time source.
"""

from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "DeterministicClock", "SystemClock", "SYSTEM_ACTOR_ID"]
