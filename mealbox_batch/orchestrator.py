"""
JobOrchestrator -- DI container and entry point for the background jobs.

Contract:
    Wires the domain services, the JobRegistry with all six job
    definitions, the JobEngine and the JobRunner around one session and
    one Clock.  ``run(job_type)`` is the single entry point an external
    trigger calls; ``run_until_complete(job_type)`` is the supervisor loop
    that re-invokes while a run reports ``has_more``.

Architecture: mealbox_batch (top-level).  The canonical place where batch
    dependencies are composed.

Invariants enforced:
    - Clock injection: every service receives the same Clock.
    - Batch sizing comes from ``EngineConfig.job_settings``.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import Session

from mealbox_config.schema import EngineConfig
from mealbox_kernel.domain.actors import SYSTEM_ACTOR_ID
from mealbox_kernel.domain.clock import Clock, SystemClock
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.service import BillingService
from mealbox_modules.credits.service import CreditService
from mealbox_modules.orders.service import OrderService
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.config import SubscriptionConfig
from mealbox_modules.subscriptions.service import SubscriptionService
from mealbox_modules.trials.service import TrialService
from mealbox_services.notifier import LoggingNotifier, Notifier
from mealbox_services.payment_gateway import PaymentGateway, RazorpayGateway
from mealbox_services.transitions import TransitionGateway

from mealbox_batch.domain.types import JobRunResult, JobType
from mealbox_batch.jobs.auto_cancel import (
    AutoCancelPausedJob,
    AutoCancelWarningResult,
    send_auto_cancel_warnings,
)
from mealbox_batch.jobs.base import JobRegistry, JobServices
from mealbox_batch.jobs.credit_expiry import CreditExpiryJob
from mealbox_batch.jobs.order_generation import OrderGenerationJob
from mealbox_batch.jobs.payment_retry import PaymentRetryJob
from mealbox_batch.jobs.renewal import RenewalJob
from mealbox_batch.jobs.trial_completion import TrialCompletionJob
from mealbox_batch.services.job_engine import JobEngine
from mealbox_batch.services.runner import JobRunner

logger = get_logger("batch.orchestrator")


def default_job_registry() -> JobRegistry:
    """Create a JobRegistry pre-loaded with every job definition."""
    registry = JobRegistry()
    registry.register(RenewalJob("weekly"))
    registry.register(RenewalJob("monthly"))
    registry.register(PaymentRetryJob())
    registry.register(CreditExpiryJob())
    registry.register(OrderGenerationJob())
    registry.register(TrialCompletionJob())
    registry.register(AutoCancelPausedJob())
    return registry


def build_services(
    session: Session,
    clock: Clock,
    config: EngineConfig,
    gateway: PaymentGateway | None = None,
    notifier: Notifier | None = None,
) -> JobServices:
    """Wire the domain services a run needs around one session."""
    platform = PlatformService(session, clock)
    credits = CreditService(session, clock, platform)
    billing = BillingService(
        session,
        clock,
        gateway=gateway,
        notifier=notifier,
        credits=credits,
        platform=platform,
        currency=config.currency,
        receipt_prefix=config.receipt_prefix,
    )
    orders = OrderService(session, clock, credits=credits, platform=platform)
    subscriptions = SubscriptionService(
        session,
        clock,
        config=SubscriptionConfig.from_engine_config(config),
        credits=credits,
        billing=billing,
        orders=orders,
        platform=platform,
    )
    return JobServices(
        platform=platform,
        credits=credits,
        billing=billing,
        orders=orders,
        subscriptions=subscriptions,
        trials=TrialService(session, clock),
        transitions=TransitionGateway(
            session, clock, credits=credits, billing=billing, orders=orders, platform=platform,
        ),
        notifier=notifier,
    )


class JobOrchestrator:
    """DI container for the job system.

    Contract:
        - ``from_session()`` creates a fully wired orchestrator.
        - ``run()`` performs one trigger invocation of a job type.
        - ``run_until_complete()`` re-invokes while ``has_more``.
        - ``send_auto_cancel_warnings()`` runs the notification-only pass.

    Non-goals:
        - Does NOT schedule anything -- triggers are external.
        - Does NOT manage session lifecycle beyond the runner's per-batch
          commits.
    """

    def __init__(
        self,
        session: Session,
        services: JobServices,
        registry: JobRegistry,
        config: EngineConfig,
        clock: Clock | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> None:
        self._session = session
        self._services = services
        self._registry = registry
        self._config = config
        self._clock = clock or SystemClock()
        self._actor_id = actor_id
        self._engine = JobEngine(session, self._clock, actor_id)
        self._runner = JobRunner(
            session,
            services,
            clock=self._clock,
            engine=self._engine,
            lease_grace_seconds=config.lease_grace_seconds,
            actor_id=actor_id,
        )

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        clock: Clock | None = None,
        config: EngineConfig | None = None,
        gateway: PaymentGateway | None = None,
        notifier: Notifier | None = None,
        registry: JobRegistry | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> JobOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            session: SQLAlchemy session; the runner commits on it per batch.
            clock: Optional clock for deterministic testing.
            config: Engine configuration; defaults to ``EngineConfig()``.
            gateway: Payment gateway.  Built from ``config.gateway`` when
                it carries credentials, otherwise payment paths are
                unavailable.
            notifier: Defaults to ``LoggingNotifier``.
            registry: Optional pre-configured registry.
        """
        effective_clock = clock or SystemClock()
        effective_config = config or EngineConfig()
        if gateway is None and effective_config.gateway.is_configured:
            gateway = RazorpayGateway(effective_config.gateway)
        services = build_services(
            session,
            effective_clock,
            effective_config,
            gateway=gateway,
            notifier=notifier if notifier is not None else LoggingNotifier(),
        )
        return cls(
            session=session,
            services=services,
            registry=registry if registry is not None else default_job_registry(),
            config=effective_config,
            clock=effective_clock,
            actor_id=actor_id,
        )

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run(self, job_type: JobType | str) -> JobRunResult:
        definition = self._registry.get(job_type)
        settings = self._config.job_settings(definition.job_type.value)
        logger.info("job_triggered", extra={"job_type": definition.job_type.value})
        return self._runner.run(definition, settings)

    def run_until_complete(
        self,
        job_type: JobType | str,
        max_runs: int = 100,
    ) -> list[JobRunResult]:
        """Re-invoke ``run`` until a run reports ``has_more=False``."""
        results: list[JobRunResult] = []
        for _ in range(max_runs):
            result = self.run(job_type)
            results.append(result)
            if not result.has_more:
                return results
        logger.warning("supervisor_run_limit_reached", extra={
            "job_type": str(job_type),
            "runs": max_runs,
        })
        return results

    def send_auto_cancel_warnings(self) -> AutoCancelWarningResult:
        return send_auto_cancel_warnings(
            self._session,
            self._clock,
            self._services.notifier,
            platform=self._services.platform,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def engine(self) -> JobEngine:
        return self._engine

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def services(self) -> JobServices:
        return self._services
