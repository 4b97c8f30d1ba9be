"""
Shared fixtures for the payment reconciliation tests

Each test gets its own file-backed SQLite database so that the separate sessions
opened by the settings provider and notification handlers can read alongside
the unit of work under test.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import logging
from decimal import Decimal
from typing import Any, Dict, List

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine
from gateway.base import CanonicalEvent, CanonicalStatus, EventKind, GatewayAdapter
from gateway.registry import reset_adapters
from models import Base, CreditPackage, LlmModel, Plan, PlanTier, User
from services.domain_events import domain_event_bus
from services.webhook_settings_provider import WebhookSettingsProvider

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


class FakeClock:
    """Monotonic clock the tests move by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAdapter(GatewayAdapter):
    """
    Adapter whose payload is already canonical: {"id", "type", "kind", ...CanonicalEvent fields}.

    Set `fail_times` to make the first N parse_event calls raise, simulating a
    handler that throws on first delivery.
    """

    name = "razorpay"

    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.parse_calls = 0
        self.cancelled: List[str] = []
        self.refunded: List[tuple] = []

    async def verify_signature(self, body: bytes, headers) -> bool:
        return headers.get("x-test-signature") != "bad"

    def parse_event(self, payload: Dict[str, Any]) -> CanonicalEvent:
        self.parse_calls += 1
        if self.parse_calls <= self.fail_times:
            raise RuntimeError("simulated handler failure")
        fields = {k: v for k, v in payload.items() if k not in ("id", "type", "kind")}
        if "amount" in fields and fields["amount"] is not None:
            fields["amount"] = Decimal(str(fields["amount"]))
        if fields.get("status") is not None:
            fields["status"] = CanonicalStatus(fields["status"])
        return CanonicalEvent(
            gateway=self.name,
            event_id=payload["id"],
            event_type=payload.get("type", "test.event"),
            kind=EventKind(payload.get("kind", EventKind.CREDIT_PURCHASE.value)),
            raw=payload,
            **fields,
        )

    async def cancel_subscription(self, subscription_id: str) -> None:
        self.cancelled.append(subscription_id)

    async def refund_payment(self, payment_id: str, amount: Decimal, currency: str) -> str:
        self.refunded.append((payment_id, amount, currency))
        return f"rf_fake_{len(self.refunded)}"


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'payments.db'}")
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def isolate_globals():
    """Domain event subscribers and the adapter registry are process-wide"""
    domain_event_bus.clear_subscribers()
    reset_adapters()
    yield
    domain_event_bus.clear_subscribers()
    reset_adapters()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def settings_provider(session_factory, fake_clock):
    return WebhookSettingsProvider(session_factory, ttl_seconds=60, clock=fake_clock)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def adapter_class():
    return FakeAdapter


@pytest.fixture
def seeded(session_factory):
    """A user, free and pro plans, one model per tier and a credit package"""
    session = session_factory()
    try:
        user = User(email="buyer@example.com", name="Test Buyer", credits=100)
        session.add(user)
        session.add_all([
            Plan(id="free", name="free", tier=PlanTier.FREE.value, price=Decimal("0"), monthly_credits=0),
            Plan(id="pro_monthly", name="pro", tier=PlanTier.PRO.value, price=Decimal("20.00"),
                 monthly_credits=1000),
            LlmModel(id="small-free", name="Small Free", tier=PlanTier.FREE.value, sort_order=1),
            LlmModel(id="large-pro", name="Large Pro", tier=PlanTier.PRO.value, sort_order=1),
            CreditPackage(id="pack_500", name="500 credits", credits=500, price=Decimal("5.00")),
        ])
        session.commit()
        return {"user_id": user.id}
    finally:
        session.close()

