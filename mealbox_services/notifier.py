"""
Notifier -- fire-and-forget customer notifications.

The domain only needs ``notify(consumer_id, event_type, payload)``.  The
default ``LoggingNotifier`` writes a structured log line; a deployment
swaps in an email/SMS/push implementation behind the same protocol.

``safe_notify`` is how every caller sends: a failing notifier is logged
and never propagates into billing or job code.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from mealbox_kernel.logging_config import get_logger

logger = get_logger("services.notifier")


class NotificationEvent:
    """Event type names sent through the notifier."""

    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_RETRY = "payment_retry"
    MANDATE_FAILED = "mandate_failed"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    AUTO_CANCEL_WARNING = "auto_cancel_warning"
    SUBSCRIPTION_AUTO_CANCELLED = "subscription_auto_cancelled"
    REFUND_FAILED = "refund_failed"


@runtime_checkable
class Notifier(Protocol):
    def notify(self, consumer_id: UUID, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Notifier that only records what would have been sent."""

    def notify(self, consumer_id: UUID, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("notification_sent", extra={
            "consumer_id": str(consumer_id),
            "event_type": event_type,
            "payload": payload,
        })


def safe_notify(
    notifier: Notifier | None,
    consumer_id: UUID,
    event_type: str,
    payload: dict[str, Any] | None = None,
) -> bool:
    """Send a notification; returns False instead of raising on failure."""
    if notifier is None:
        return False
    try:
        notifier.notify(consumer_id, event_type, payload or {})
        return True
    except Exception:
        logger.warning("notification_failed", exc_info=True, extra={
            "consumer_id": str(consumer_id),
            "event_type": event_type,
        })
        return False
