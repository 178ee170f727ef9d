"""
Pytest fixtures for the mealbox test suite.

Provides:
- In-memory SQLite sessions (SAVEPOINT support installed, all tables created)
- A DeterministicClock pinned to Monday 2026-01-05 12:00 UTC
- FakeGateway / RecordingNotifier doubles for the payment and notification seams
- Wired domain services and a vendor with breakfast, lunch and dinner slots

Every test gets its own database; the job runner commits, so sharing one
across tests would leak state.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mealbox_batch.orchestrator import JobOrchestrator, build_services
from mealbox_config.schema import EngineConfig
from mealbox_kernel.db.engine import install_sqlite_savepoint_support
from mealbox_kernel.domain.clock import DeterministicClock
from mealbox_kernel.exceptions import PaymentGatewayError
from mealbox_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from mealbox_modules._orm_registry import create_all_tables
from mealbox_modules.platform.models import MealSlot, PlatformSettings
from mealbox_modules.subscriptions.models import SlotSelection
from mealbox_services.payment_gateway import (
    GatewayOrder,
    GatewayRefund,
    MandateCharge,
    MandateInfo,
)

TEST_VENDOR_ID = UUID("00000000-0000-4000-a000-000000000001")
TEST_CONSUMER_ID = UUID("00000000-0000-4000-a000-000000000002")

MONDAY = date(2026, 1, 5)
WEEKDAYS = (0, 1, 2, 3, 4)

LUNCH_PRICE = Decimal("100.00")
DINNER_PRICE = Decimal("120.00")
BREAKFAST_PRICE = Decimal("80.00")


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture mealbox logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, services):
            ...
            logs = captured_logs()
            assert any(r["message"] == "credit_created" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("mealbox")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Test doubles
# =============================================================================


@dataclass
class FakeGateway:
    """In-memory PaymentGateway.

    ``fail_mandate`` / ``fail_refund`` / ``fail_mandate_lookup`` make the
    matching call raise PaymentGatewayError; ``mandate_status`` is what the
    live mandate lookup reports and ``refund_status`` what create_refund
    reports.
    Signatures are valid when they equal ``"sig:<order_id>|<payment_id>"``
    (checkout) or ``"sig:webhook"`` (webhooks).
    """

    fail_mandate: bool = False
    fail_refund: bool = False
    fail_mandate_lookup: bool = False
    mandate_status: str = "active"
    refund_status: str = "pending"
    mandate_lookups: list[str] = field(default_factory=list)
    orders: list[GatewayOrder] = field(default_factory=list)
    charges: list[dict[str, Any]] = field(default_factory=list)
    refunds: list[GatewayRefund] = field(default_factory=list)

    def create_order(self, amount, currency, receipt, notes=None) -> GatewayOrder:
        order = GatewayOrder(
            id=f"order_{len(self.orders) + 1}",
            amount=Decimal(amount),
            currency=currency,
            receipt=receipt,
            notes=dict(notes or {}),
        )
        self.orders.append(order)
        return order

    def verify_signature(self, order_id, payment_id, signature) -> bool:
        return signature == f"sig:{order_id}|{payment_id}"

    def verify_webhook_signature(self, payload, signature) -> bool:
        return signature == "sig:webhook"

    def charge_via_mandate(
        self, mandate_id, order_id, amount, customer_id, currency="INR",
    ) -> MandateCharge:
        if self.fail_mandate:
            raise PaymentGatewayError("charge_via_mandate", "mandate rejected", status_code=400)
        self.charges.append({
            "mandate_id": mandate_id,
            "order_id": order_id,
            "amount": Decimal(amount),
            "currency": currency,
        })
        return MandateCharge(payment_id=f"pay_m{len(self.charges)}")

    def get_mandate_status(self, mandate_id) -> MandateInfo:
        self.mandate_lookups.append(mandate_id)
        if self.fail_mandate_lookup:
            raise PaymentGatewayError("get_mandate_status", f"mandate {mandate_id} not found")
        return MandateInfo(status=self.mandate_status)

    def create_refund(self, payment_id, amount=None, notes=None) -> GatewayRefund:
        if self.fail_refund:
            raise PaymentGatewayError("create_refund", "refund rejected", status_code=400)
        refund = GatewayRefund(
            id=f"rfnd_{len(self.refunds) + 1}",
            payment_id=payment_id,
            amount=Decimal(amount),
            status=self.refund_status,
        )
        self.refunds.append(refund)
        return refund


class RecordingNotifier:
    """Notifier that keeps every notification for assertions."""

    def __init__(self) -> None:
        self.sent: list[tuple[UUID, str, dict[str, Any]]] = []

    def notify(self, consumer_id: UUID, event_type: str, payload: dict[str, Any]) -> None:
        self.sent.append((consumer_id, event_type, payload))

    def events(self, event_type: str) -> list[tuple[UUID, str, dict[str, Any]]]:
        return [n for n in self.sent if n[1] == event_type]


class ExplodingNotifier:
    def notify(self, consumer_id, event_type, payload) -> None:
        raise RuntimeError("smtp down")


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    install_sqlite_savepoint_support(eng)
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session(engine) -> Session:
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    sess = factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def services(session, clock, engine_config, gateway, notifier):
    """Domain services wired the way the orchestrator wires them."""
    return build_services(session, clock, engine_config, gateway=gateway, notifier=notifier)


@pytest.fixture
def orchestrator(session, clock, engine_config, gateway, notifier) -> JobOrchestrator:
    return JobOrchestrator.from_session(
        session, clock=clock, config=engine_config, gateway=gateway, notifier=notifier,
    )


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def platform_settings(services) -> PlatformSettings:
    return services.platform.upsert_settings(PlatformSettings())


@pytest.fixture
def vendor(services, platform_settings) -> UUID:
    """Vendor offering all three slots, no capacity limit."""
    platform = services.platform
    platform.upsert_vendor_slot(TEST_VENDOR_ID, MealSlot.BREAKFAST, time(8, 0), BREAKFAST_PRICE)
    platform.upsert_vendor_slot(TEST_VENDOR_ID, MealSlot.LUNCH, time(12, 30), LUNCH_PRICE)
    platform.upsert_vendor_slot(TEST_VENDOR_ID, MealSlot.DINNER, time(19, 30), DINNER_PRICE)
    return TEST_VENDOR_ID


@pytest.fixture
def make_group(services, vendor):
    """Factory: check out a group for the test vendor.

    Usage::

        checkout = make_group()                         # weekly lunch Mon-Fri
        checkout = make_group(slots=("lunch", "dinner"), start=date(2026, 1, 7))
    """

    def _make(
        slots: tuple[str, ...] = ("lunch",),
        start: date = MONDAY,
        period_type: str = "weekly",
        schedule_days: tuple[int, ...] = WEEKDAYS,
        consumer_id: UUID | None = None,
        **kwargs: Any,
    ):
        return services.subscriptions.create_subscription_group(
            consumer_id=consumer_id or uuid4(),
            vendor_id=vendor,
            period_type=period_type,
            start_date=start,
            slots=[SlotSelection(slot=s, schedule_days=schedule_days) for s in slots],
            **kwargs,
        )

    return _make


@pytest.fixture
def paid_group(services, make_group):
    """Factory: a checked-out group whose first invoice is paid."""

    def _make(**kwargs: Any):
        checkout = make_group(**kwargs)
        services.billing.create_manual_payment_order(checkout.invoice_id, kind="checkout")
        invoice = services.billing.get_invoice(checkout.invoice_id)
        services.billing.confirm_payment(
            invoice.id,
            invoice.gateway_order_id,
            f"pay_{invoice.id.hex[:8]}",
            f"sig:{invoice.gateway_order_id}|pay_{invoice.id.hex[:8]}",
        )
        return checkout

    return _make
