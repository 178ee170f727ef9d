"""
Typed Exception Hierarchy for the Mealbox Engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (the job runner, the CLI, an HTTP layer in front of the services)
must react to errors precisely: a passed skip cutoff is reported to the
customer, a gateway timeout is left for the Payment-Retry job, an unexpected
error fails the job record.  Matching on message text is brittle, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        subscriptions.skip_meal(subscription_id, service_date)
    except CutoffPassedError as e:
        api_response(code=e.code, cutoff=e.cutoff.isoformat())

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    MealboxError (base)
    |
    +-- SubscriptionError
    |   +-- SubscriptionNotFoundError
    |   +-- SubscriptionGroupNotFoundError
    |   +-- SubscriptionNotActiveError
    |   +-- InvalidStatusTransitionError
    |   +-- InvalidScheduleError
    |   +-- InvalidStartDateError
    |   +-- StartDateLockedError
    |   +-- CutoffPassedError
    |   +-- InvalidOrderStateError
    |   +-- OrderNotFoundError
    |
    +-- VendorError
    |   +-- VendorSlotNotFoundError
    |
    +-- CreditError
    |   +-- CreditNotFoundError
    |   +-- InvalidCreditQuantityError
    |   +-- GlobalCreditNotFoundError
    |   +-- InvalidGlobalCreditStateError
    |
    +-- BillingError
    |   +-- InvoiceNotFoundError
    |   +-- InvalidInvoiceStateError
    |   +-- SignatureVerificationError
    |   +-- RefundError
    |
    +-- PaymentGatewayError            (transient -- retried by windows)
    |
    +-- ConfigurationError
    |   +-- PlatformSettingsNotFoundError
    |
    +-- JobError
        +-- JobNotFoundError
        +-- InvalidJobTransitionError
        +-- JobAlreadyRunningError
        +-- JobTypeNotRegisteredError
        +-- JobRetryNotAllowedError

Terminal business conditions (72-hour unpaid invoice, mandate expiry) are
NOT exceptions: they are state transitions performed by the jobs.
"""

from __future__ import annotations

from datetime import date, datetime


class MealboxError(Exception):
    """
    Base exception for all mealbox engine errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "MEALBOX_ERROR"


# =============================================================================
# Subscription lifecycle
# =============================================================================


class SubscriptionError(MealboxError):
    """Base for subscription lifecycle errors."""

    code: str = "SUBSCRIPTION_ERROR"


class SubscriptionNotFoundError(SubscriptionError):
    """Subscription does not exist."""

    code: str = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, subscription_id: str):
        self.subscription_id = subscription_id
        super().__init__(f"Subscription not found: {subscription_id}")


class SubscriptionGroupNotFoundError(SubscriptionError):
    """Subscription group does not exist."""

    code: str = "SUBSCRIPTION_GROUP_NOT_FOUND"

    def __init__(self, group_id: str):
        self.group_id = group_id
        super().__init__(f"Subscription group not found: {group_id}")


class SubscriptionNotActiveError(SubscriptionError):
    """Operation requires an active subscription."""

    code: str = "SUBSCRIPTION_NOT_ACTIVE"

    def __init__(self, subscription_id: str, status: str):
        self.subscription_id = subscription_id
        self.status = status
        super().__init__(
            f"Subscription {subscription_id} is {status}, expected active"
        )


class InvalidStatusTransitionError(SubscriptionError):
    """Requested status change is not allowed by the lifecycle state machine."""

    code: str = "INVALID_STATUS_TRANSITION"

    def __init__(self, entity: str, entity_id: str, from_status: str, to_status: str):
        self.entity = entity
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot move {entity} {entity_id} from {from_status} to {to_status}"
        )


class InvalidScheduleError(SubscriptionError):
    """Schedule days are empty or outside Monday(0)..Sunday(6)."""

    code: str = "INVALID_SCHEDULE"

    def __init__(self, schedule_days: list[int], reason: str):
        self.schedule_days = list(schedule_days)
        self.reason = reason
        super().__init__(f"Invalid schedule {self.schedule_days}: {reason}")


class InvalidStartDateError(SubscriptionError):
    """Start date leaves no deliverable meal before the first renewal."""

    code: str = "INVALID_START_DATE"

    def __init__(self, start_date: date, reason: str):
        self.start_date = start_date
        self.reason = reason
        super().__init__(f"Invalid start date {start_date.isoformat()}: {reason}")


class StartDateLockedError(SubscriptionError):
    """Start date cannot change once a meal has been delivered."""

    code: str = "START_DATE_LOCKED"

    def __init__(self, group_id: str, delivered_orders: int):
        self.group_id = group_id
        self.delivered_orders = delivered_orders
        super().__init__(
            f"Group {group_id} already has {delivered_orders} delivered order(s)"
        )


class CutoffPassedError(SubscriptionError):
    """Skip requested at or after the slot's skip cutoff."""

    code: str = "CUTOFF_PASSED"

    def __init__(self, subscription_id: str, service_date: date, cutoff: datetime):
        self.subscription_id = subscription_id
        self.service_date = service_date
        self.cutoff = cutoff
        super().__init__(
            f"Skip cutoff for {service_date.isoformat()} passed at {cutoff.isoformat()}"
        )


class InvalidOrderStateError(SubscriptionError):
    """Order exists for the date/slot but is no longer scheduled."""

    code: str = "INVALID_ORDER_STATE"

    def __init__(self, order_id: str, status: str):
        self.order_id = order_id
        self.status = status
        super().__init__(f"Order {order_id} is {status}, expected scheduled")


class OrderNotFoundError(SubscriptionError):
    """Order does not exist."""

    code: str = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


# =============================================================================
# Vendor
# =============================================================================


class VendorError(MealboxError):
    """Base for vendor configuration errors."""

    code: str = "VENDOR_ERROR"


class VendorSlotNotFoundError(VendorError):
    """Vendor does not offer (or has disabled) the slot."""

    code: str = "VENDOR_SLOT_NOT_FOUND"

    def __init__(self, vendor_id: str, slot: str):
        self.vendor_id = vendor_id
        self.slot = slot
        super().__init__(f"Vendor {vendor_id} has no enabled {slot} slot")


# =============================================================================
# Credits
# =============================================================================


class CreditError(MealboxError):
    """Base for credit ledger errors."""

    code: str = "CREDIT_ERROR"


class CreditNotFoundError(CreditError):
    """Credit does not exist."""

    code: str = "CREDIT_NOT_FOUND"

    def __init__(self, credit_id: str):
        self.credit_id = credit_id
        super().__init__(f"Credit not found: {credit_id}")


class InvalidCreditQuantityError(CreditError):
    """Credit quantity must be a positive number of meals."""

    code: str = "INVALID_CREDIT_QUANTITY"

    def __init__(self, quantity: int):
        self.quantity = quantity
        super().__init__(f"Credit quantity must be positive, got {quantity}")


class GlobalCreditNotFoundError(CreditError):
    """Global credit does not exist."""

    code: str = "GLOBAL_CREDIT_NOT_FOUND"

    def __init__(self, global_credit_id: str):
        self.global_credit_id = global_credit_id
        super().__init__(f"Global credit not found: {global_credit_id}")


class InvalidGlobalCreditStateError(CreditError):
    """Global credit is not in the status the operation requires."""

    code: str = "INVALID_GLOBAL_CREDIT_STATE"

    def __init__(self, global_credit_id: str, status: str, expected: str):
        self.global_credit_id = global_credit_id
        self.status = status
        self.expected = expected
        super().__init__(
            f"Global credit {global_credit_id} is {status}, expected {expected}"
        )


# =============================================================================
# Billing
# =============================================================================


class BillingError(MealboxError):
    """Base for invoice and payment errors."""

    code: str = "BILLING_ERROR"


class InvoiceNotFoundError(BillingError):
    """Invoice does not exist."""

    code: str = "INVOICE_NOT_FOUND"

    def __init__(self, invoice_id: str):
        self.invoice_id = invoice_id
        super().__init__(f"Invoice not found: {invoice_id}")


class InvalidInvoiceStateError(BillingError):
    """Invoice is not in a state that allows the operation."""

    code: str = "INVALID_INVOICE_STATE"

    def __init__(self, invoice_id: str, status: str, operation: str):
        self.invoice_id = invoice_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} invoice {invoice_id} in state {status}")


class SignatureVerificationError(BillingError):
    """Gateway payment or webhook signature did not verify."""

    code: str = "SIGNATURE_VERIFICATION_FAILED"

    def __init__(self, context: str):
        self.context = context
        super().__init__(f"Signature verification failed for {context}")


class RefundError(BillingError):
    """Refund could not be issued for the invoice."""

    code: str = "REFUND_ERROR"

    def __init__(self, invoice_id: str, reason: str):
        self.invoice_id = invoice_id
        self.reason = reason
        super().__init__(f"Refund for invoice {invoice_id} failed: {reason}")


# =============================================================================
# Payment gateway
# =============================================================================


class PaymentGatewayError(MealboxError):
    """Transient or remote failure talking to the payment gateway."""

    code: str = "PAYMENT_GATEWAY_ERROR"

    def __init__(
        self,
        operation: str,
        reason: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        self.operation = operation
        self.reason = reason
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(f"Payment gateway {operation} failed: {reason}")


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(MealboxError):
    """Base for missing or invalid configuration."""

    code: str = "CONFIGURATION_ERROR"


class PlatformSettingsNotFoundError(ConfigurationError):
    """Platform settings row is required but missing."""

    code: str = "PLATFORM_SETTINGS_NOT_FOUND"

    def __init__(self, setting: str | None = None):
        self.setting = setting
        detail = f" (needed: {setting})" if setting else ""
        super().__init__(f"Platform settings not configured{detail}")


# =============================================================================
# Jobs
# =============================================================================


class JobError(MealboxError):
    """Base for job engine errors."""

    code: str = "JOB_ERROR"


class JobNotFoundError(JobError):
    """Job record does not exist."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class InvalidJobTransitionError(JobError):
    """Job status transition is not allowed (terminal jobs are immutable)."""

    code: str = "INVALID_JOB_TRANSITION"

    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Job {job_id} cannot move from {from_status} to {to_status}")


class JobAlreadyRunningError(JobError):
    """Another run of the same job type holds the lease."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_type: str, holder_job_id: str):
        self.job_type = job_type
        self.holder_job_id = holder_job_id
        super().__init__(f"Job type {job_type} is already running as {holder_job_id}")


class JobTypeNotRegisteredError(JobError):
    """No job definition registered for the job type."""

    code: str = "JOB_TYPE_NOT_REGISTERED"

    def __init__(self, job_type: str, available: tuple[str, ...]):
        self.job_type = job_type
        self.available = available
        super().__init__(
            f"No job definition registered for '{job_type}'. Available: {list(available)}"
        )


class JobRetryNotAllowedError(JobError):
    """Job is not failed, or has exhausted its retries."""

    code: str = "JOB_RETRY_NOT_ALLOWED"

    def __init__(self, job_id: str, status: str, retry_count: int, max_retries: int):
        self.job_id = job_id
        self.status = status
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            f"Job {job_id} cannot be retried (status={status}, "
            f"retries={retry_count}/{max_retries})"
        )


