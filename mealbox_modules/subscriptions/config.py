"""
Subscription Configuration Schema.

Defines the structure and sensible defaults for subscription settings.
Business rules that operators change at runtime (pause limits, skip
cutoff) live in the platform settings row instead.
"""

from dataclasses import dataclass, field

from mealbox_kernel.logging_config import get_logger

logger = get_logger("modules.subscriptions.config")


def _default_skip_limits() -> dict[str, int]:
    return {"breakfast": 2, "lunch": 2, "dinner": 2}


@dataclass
class SubscriptionConfig:
    """
    Configuration schema for the subscription lifecycle.

        config = SubscriptionConfig(
            timezone="Asia/Kolkata",
            default_skip_limits={"lunch": 4},
        )
    """

    # Zone used to place a slot's delivery window on the calendar
    timezone: str = "Asia/Kolkata"

    # Skips per cycle that earn a credit, per slot
    default_skip_limits: dict[str, int] = field(default_factory=_default_skip_limits)

    def __post_init__(self):
        if not self.timezone or not self.timezone.strip():
            raise ValueError("timezone cannot be empty")
        for slot, limit in self.default_skip_limits.items():
            if limit < 0:
                raise ValueError(f"skip limit for {slot} cannot be negative")
        logger.debug("subscription_config_initialized", extra={
            "timezone": self.timezone,
            "default_skip_limits": self.default_skip_limits,
        })

    def skip_limit_for(self, slot: str) -> int:
        return self.default_skip_limits.get(slot, 0)

    @classmethod
    def from_engine_config(cls, engine_config) -> "SubscriptionConfig":
        return cls(timezone=engine_config.timezone)
