"""
Engine configuration schema.

Typed, frozen view of the deploy-time configuration: timezone, currency,
per-job batch sizing and the payment gateway connection.  YAML fragments
are parsed into these types by the loader.

Key distinction:
  EngineConfig     = deploy-time settings (YAML + environment)
  PlatformSettings = business rules editable at runtime (database row,
                     see mealbox_modules.platform)
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobSettings:
    """Batch sizing for one job type."""

    batch_size: int
    max_duration_seconds: int = 300
    single_pass: bool = False

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.max_duration_seconds <= 0:
            raise ValueError(
                f"max_duration_seconds must be positive, got {self.max_duration_seconds}"
            )


DEFAULT_JOB_SETTINGS: dict[str, JobSettings] = {
    "renewal_weekly": JobSettings(batch_size=100),
    "renewal_monthly": JobSettings(batch_size=100),
    "payment_retry": JobSettings(batch_size=50),
    "credit_expiry": JobSettings(batch_size=1000),
    "order_generation": JobSettings(batch_size=50),
    "trial_completion": JobSettings(batch_size=100),
    "pause_auto_cancel": JobSettings(batch_size=50, single_pass=True),
}


# ---------------------------------------------------------------------------
# Payment gateway
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GatewaySettings:
    """Connection settings for the hosted payment gateway."""

    base_url: str = "https://api.razorpay.com/v1"
    key_id: str | None = None
    key_secret: str | None = None
    webhook_secret: str | None = None
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 2.0

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EngineConfig:
    """Root configuration object returned by ``get_active_config()``."""

    timezone: str = "Asia/Kolkata"
    currency: str = "INR"
    receipt_prefix: str = "MB"
    lease_grace_seconds: int = 60
    database_url: str | None = None
    jobs: dict[str, JobSettings] = field(
        default_factory=lambda: dict(DEFAULT_JOB_SETTINGS)
    )
    gateway: GatewaySettings = field(default_factory=GatewaySettings)

    def job_settings(self, job_type: str) -> JobSettings:
        """Settings for ``job_type``, falling back to the built-in defaults."""
        if job_type in self.jobs:
            return self.jobs[job_type]
        return DEFAULT_JOB_SETTINGS[job_type]
