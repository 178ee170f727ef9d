"""
Auto-cancel of long pauses (``pause_auto_cancel``) and its warning pass.

A group paused for longer than ``max_pause_days`` is cancelled through
``TransitionGateway.auto_cancel_paused_group``: its remaining slot
credits become one GlobalCredit, and the group, its subscriptions and its
future orders are cancelled in one SAVEPOINT.  The job is single pass.

``send_auto_cancel_warnings`` runs on its own schedule and only notifies
customers whose pause will hit the limit in ``auto_cancel_warning_days``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from mealbox_kernel.domain.clock import Clock
from mealbox_kernel.logging_config import get_logger
from mealbox_modules.platform.service import PlatformService
from mealbox_modules.subscriptions.models import SubscriptionStatus
from mealbox_modules.subscriptions.orm import SubscriptionGroupModel
from mealbox_services.notifier import NotificationEvent, Notifier, safe_notify

from mealbox_batch.domain.types import AutoCancelJobResult, JobType
from mealbox_batch.jobs.base import BaseJobDefinition, JobContext, RunStats, parse_cursor

logger = get_logger("batch.jobs.auto_cancel")


class AutoCancelPausedJob(BaseJobDefinition):
    job_type = JobType.PAUSE_AUTO_CANCEL
    description = "Cancel groups paused longer than the platform limit"
    result_type = AutoCancelJobResult

    def prepare(self, context: JobContext) -> None:
        # a missing settings row fails the job
        context.services.platform.require_settings()

    def fetch_batch(
        self, context: JobContext, cursor: str | None, batch_size: int,
    ) -> Sequence[SubscriptionGroupModel]:
        settings = context.services.platform.require_settings()
        threshold = context.as_of - timedelta(days=settings.max_pause_days)
        stmt = (
            select(SubscriptionGroupModel)
            .where(
                SubscriptionGroupModel.status == SubscriptionStatus.PAUSED.value,
                SubscriptionGroupModel.paused_at < threshold,
            )
            .order_by(SubscriptionGroupModel.id)
            .limit(batch_size)
        )
        after = parse_cursor(cursor)
        if after is not None:
            stmt = stmt.where(SubscriptionGroupModel.id > after)
        return list(context.session.execute(stmt).scalars().all())

    def process_item(self, context: JobContext, group: SubscriptionGroupModel) -> None:
        services = context.services
        outcome = services.transitions.auto_cancel_paused_group(group.id, actor_id=context.actor_id)
        stats = context.stats
        stats.bump("cancelled")
        stats.bump("credits_converted", outcome.credits_converted)
        stats.bump("global_credit_amount", outcome.global_credit_amount)

        sent = safe_notify(
            services.notifier,
            outcome.consumer_id,
            NotificationEvent.SUBSCRIPTION_AUTO_CANCELLED,
            {
                "group_id": str(outcome.group_id),
                "credits_converted": outcome.credits_converted,
                "global_credit_amount": str(outcome.global_credit_amount),
            },
        )
        if sent:
            stats.bump("notifications_sent")

    def result_fields(self, stats: RunStats) -> dict[str, Any]:
        return {
            "cancelled": stats.counts["cancelled"],
            "credits_converted": stats.counts["credits_converted"],
            "global_credit_amount": Decimal(stats.counts["global_credit_amount"]).quantize(Decimal("0.01")),
            "notifications_sent": stats.counts["notifications_sent"],
        }


@dataclass(frozen=True)
class AutoCancelWarningResult:
    warned: int
    group_ids: tuple[UUID, ...] = ()
    days_remaining: int = 0


def send_auto_cancel_warnings(
    session: Session,
    clock: Clock,
    notifier: Notifier | None,
    platform: PlatformService | None = None,
) -> AutoCancelWarningResult:
    """
    Notify groups whose pause began in the 24 hours ending
    ``max_pause_days - auto_cancel_warning_days`` days ago.

    Performs no writes.
    """
    platform = platform or PlatformService(session, clock)
    settings = platform.require_settings()
    warn_after = settings.max_pause_days - settings.auto_cancel_warning_days
    window_end = clock.now() - timedelta(days=warn_after)
    window_start = window_end - timedelta(hours=24)

    groups = session.execute(
        select(SubscriptionGroupModel)
        .where(
            SubscriptionGroupModel.status == SubscriptionStatus.PAUSED.value,
            SubscriptionGroupModel.paused_at > window_start,
            SubscriptionGroupModel.paused_at <= window_end,
        )
        .order_by(SubscriptionGroupModel.id)
    ).scalars().all()

    warned: list[UUID] = []
    for group in groups:
        cancel_on = group.paused_at + timedelta(days=settings.max_pause_days)
        if safe_notify(notifier, group.consumer_id, NotificationEvent.AUTO_CANCEL_WARNING, {
            "group_id": str(group.id),
            "auto_cancel_on": cancel_on.date().isoformat(),
            "days_remaining": settings.auto_cancel_warning_days,
        }):
            warned.append(group.id)

    logger.info("auto_cancel_warnings_sent", extra={
        "candidates": len(groups),
        "warned": len(warned),
    })
    return AutoCancelWarningResult(
        warned=len(warned),
        group_ids=tuple(warned),
        days_remaining=settings.auto_cancel_warning_days,
    )
