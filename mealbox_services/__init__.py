"""
mealbox_services -- external collaborators and multi-row transitions.

Responsibility:
    Interfaces to the outside world (payment gateway, notifier) and the
    atomic persistence transitions the batch jobs depend on
    (``mealbox_services.transitions``).

Architecture position:
    Services -- composes engines + kernel; modules import the gateway and
    notifier from here.

    Dependency direction:
        mealbox_modules/  -> mealbox_services.payment_gateway / notifier
        mealbox_services.transitions -> mealbox_modules
        mealbox_kernel/   -> mealbox_services (FORBIDDEN)

Import ``TransitionGateway`` from ``mealbox_services.transitions``
directly; it is not re-exported here because it imports the modules that
themselves import this package.
"""

from mealbox_kernel.logging_config import get_logger

logger = get_logger("services")

from mealbox_services.notifier import (  # noqa: E402
    LoggingNotifier,
    NotificationEvent,
    Notifier,
    safe_notify,
)
from mealbox_services.payment_gateway import (  # noqa: E402
    GatewayOrder,
    GatewayRefund,
    MandateCharge,
    MandateInfo,
    PaymentGateway,
    RazorpayGateway,
)

__all__ = [
    "GatewayOrder",
    "GatewayRefund",
    "LoggingNotifier",
    "MandateCharge",
    "MandateInfo",
    "NotificationEvent",
    "Notifier",
    "PaymentGateway",
    "RazorpayGateway",
    "safe_notify",
]
