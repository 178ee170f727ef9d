"""
JobDefinition protocol, run context, and JobRegistry.

Contract:
    ``JobDefinition`` is the interface every background job implements.
    The runner owns the job record, the lease, the batch loop, commits and
    continuation; a definition only fetches pages and processes items.
    ``JobRegistry`` maps ``JobType`` to its definition.

Architecture:
    mealbox_batch/jobs.  Definitions reach the domain only through the
    services bundled in ``JobServices``.

Invariants enforced:
    - One definition per ``JobType``.
    - Pages are ordered by id and fetched after the keyset cursor, so a
      resumed run never skips or repeats an item.
    - Default ``process_batch`` runs every item in its own SAVEPOINT; an
      item failure is rolled back, counted and logged, never raised.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, ClassVar, Protocol, runtime_checkable
from uuid import UUID

from sqlalchemy.orm import Session

from mealbox_config.schema import JobSettings
from mealbox_kernel.domain.clock import Clock
from mealbox_kernel.exceptions import JobTypeNotRegisteredError
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.billing.service import BillingService
from mealbox_modules.credits.service import CreditService
from mealbox_modules.orders.service import OrderService
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.service import SubscriptionService
from mealbox_modules.trials.service import TrialService
from mealbox_services.notifier import Notifier
from mealbox_services.transitions import TransitionGateway

from mealbox_batch.domain.types import Job, JobLogLevel, JobResult, JobType
from mealbox_batch.services.job_engine import JobEngine

logger = get_logger("batch.jobs")


# =============================================================================
# Run context
# =============================================================================


@dataclass
class JobServices:
    """Domain services shared by every job of one run."""

    platform: PlatformService
    credits: CreditService
    billing: BillingService
    orders: OrderService
    subscriptions: SubscriptionService
    trials: TrialService
    transitions: TransitionGateway
    notifier: Notifier | None = None


@dataclass
class RunStats:
    """Mutable counters accumulated across the batches of one run."""

    processed: int = 0
    errors: int = 0
    batches: int = 0
    counts: Counter = field(default_factory=Counter)
    breakdowns: dict[str, Counter] = field(default_factory=dict)

    def bump(self, key: str, amount: int = 1) -> None:
        self.counts[key] += amount

    def breakdown(self, name: str) -> Counter:
        return self.breakdowns.setdefault(name, Counter())


@dataclass
class JobContext:
    """Everything a definition sees while processing one run."""

    session: Session
    clock: Clock
    engine: JobEngine
    job: Job
    settings: JobSettings
    services: JobServices
    actor_id: UUID
    as_of: datetime
    stats: RunStats = field(default_factory=RunStats)
    on_checkpoint: Callable[[], None] | None = None

    @property
    def run_date(self) -> date:
        return self.as_of.date()

    def checkpoint(self) -> None:
        """Make the work done so far durable before an external side effect."""
        if self.on_checkpoint is not None:
            self.on_checkpoint()

    def log(self, level: JobLogLevel | str, message: str, **metadata: Any) -> None:
        self.engine.log_job(self.job.id, level, message, metadata)


# =============================================================================
# JobDefinition Protocol
# =============================================================================


@runtime_checkable
class JobDefinition(Protocol):
    """Interface for background job implementations.

    Contract:
        - ``job_type``: the JobType this definition handles.
        - ``prepare()``: run-level checks before the first batch.
        - ``fetch_batch()``: next page after ``cursor``, ordered by id.
        - ``cursor_of()``: keyset cursor value of an item.
        - ``process_batch()``: process one page (SAVEPOINT per item).
        - ``build_result()``: typed result persisted on the job record.

    Non-goals:
        - Does NOT commit -- the runner commits after each batch.  A
          definition that must persist state before calling out uses
          ``context.checkpoint()``, which the runner wires to its commit.
        - Does NOT touch job records -- the runner and engine do.
    """

    @property
    def job_type(self) -> JobType: ...

    @property
    def description(self) -> str: ...

    def prepare(self, context: JobContext) -> None: ...

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[Any]: ...

    def cursor_of(self, item: Any) -> str: ...

    def process_batch(self, context: JobContext, items: Sequence[Any]) -> None: ...

    def build_result(
        self, stats: RunStats, has_more: bool, next_batch_number: int | None,
    ) -> JobResult: ...


class BaseJobDefinition:
    """Shared behaviour: per-item SAVEPOINT processing and result assembly.

    Subclasses set ``job_type``, ``description`` and ``result_type`` and
    implement ``fetch_batch`` and ``process_item``; items are ORM rows or
    anything with an ``id``.
    """

    job_type: ClassVar[JobType]
    description: ClassVar[str] = ""
    result_type: ClassVar[type[JobResult]] = JobResult

    def prepare(self, context: JobContext) -> None:
        return None

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[Any]:
        raise NotImplementedError

    def cursor_of(self, item: Any) -> str:
        return str(item.id)

    def process_item(self, context: JobContext, item: Any) -> None:
        raise NotImplementedError

    def process_batch(self, context: JobContext, items: Sequence[Any]) -> None:
        for item in items:
            item_key = self.cursor_of(item)
            savepoint = context.session.begin_nested()
            try:
                self.process_item(context, item)
                savepoint.commit()
                context.stats.processed += 1
            except Exception as exc:
                savepoint.rollback()
                context.stats.errors += 1
                logger.warning("job_item_failed", exc_info=True, extra={
                    "job_id": str(context.job.id),
                    "item_key": item_key,
                })
                context.log(JobLogLevel.ERROR, "item_failed", item_key=item_key, error=str(exc))

    def result_fields(self, stats: RunStats) -> dict[str, Any]:
        """Job-specific result fields; default copies matching counters."""
        names = set(self.result_type.__dataclass_fields__)
        return {k: v for k, v in stats.counts.items() if k in names}

    def build_result(
        self, stats: RunStats, has_more: bool, next_batch_number: int | None,
    ) -> JobResult:
        return self.result_type(
            processed=stats.processed,
            errors=stats.errors,
            batches=stats.batches,
            has_more=has_more,
            next_batch_number=next_batch_number,
            **self.result_fields(stats),
        )


def parse_cursor(cursor: str | None) -> UUID | None:
    return UUID(cursor) if cursor else None


# =============================================================================
# JobRegistry
# =============================================================================


class JobRegistry:
    """Registry mapping JobType to JobDefinition implementations.

    Contract:
        - ``register()`` adds a definition; raises ValueError on duplicate.
        - ``get()`` retrieves by job type; raises JobTypeNotRegisteredError.
        - ``list_job_types()`` returns all registered job type strings.
    """

    def __init__(self) -> None:
        self._definitions: dict[JobType, JobDefinition] = {}

    def register(self, definition: JobDefinition) -> None:
        if definition.job_type in self._definitions:
            raise ValueError(
                f"Job definition already registered for '{definition.job_type.value}'"
            )
        self._definitions[definition.job_type] = definition

    def get(self, job_type: JobType | str) -> JobDefinition:
        try:
            return self._definitions[JobType(job_type)]
        except (KeyError, ValueError):
            raise JobTypeNotRegisteredError(
                getattr(job_type, "value", str(job_type)), self.list_job_types(),
            ) from None

    def list_job_types(self) -> tuple[str, ...]:
        return tuple(sorted(t.value for t in self._definitions))

    def __contains__(self, job_type: object) -> bool:
        try:
            return JobType(job_type) in self._definitions
        except ValueError:
            return False

    def __len__(self) -> int:
        return len(self._definitions)
