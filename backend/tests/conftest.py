# backend/tests/conftest.py
"""
Pytest configuration for the booking engine.

The environment is pinned BEFORE any booking_engine import: an in-memory
SQLite database, a single test-mode Stripe key and a known webhook secret.
Stripe itself is never reached; the ``fake_stripe`` fixture patches the
PaymentIntent API for the duration of a test.
"""

import os

# CRITICAL: Set the test environment BEFORE any booking_engine imports!
os.environ["CI"] = "true"
os.environ["IS_TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["DB_DIALECT"] = "sqlite"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_booking_engine"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_booking_engine_test"
os.environ["BOOKING_FLOW"] = "single_step"
os.environ["BOOKING_FEE_POLICY"] = "capped_percentage"
os.environ["REQUIRE_PROVIDER_PAYOUT_ACCOUNT"] = "false"
os.environ["REVIEW_MODE"] = "false"
os.environ.pop("STRIPE_ENV", None)

from datetime import date, datetime, time
from typing import Any, Callable, Iterator

from fastapi.testclient import TestClient
import pytest
from sqlalchemy.orm import Session, sessionmaker

from booking_engine.api.dependencies.database import get_db
from booking_engine.core.config import Settings, settings
from booking_engine.core.payment_keys import SingleKeyConfig
from booking_engine.database import Base, engine
from booking_engine.main import app
from booking_engine.models import Booking, ProviderPayoutAccount, Service
from booking_engine.schemas.booking import BookingRequestCreate
from booking_engine.services.booking_service import BookingService
from booking_engine.services.payment_orchestrator import PaymentOrchestrator
from booking_engine.services.webhook_reconciler import WebhookReconciler

from tests.helpers.fake_stripe import FakeStripe

WEBHOOK_SECRET = "whsec_booking_engine_test"
TEST_KEYS = SingleKeyConfig(secret_key="sk_test_booking_engine", webhook_secrets=(WEBHOOK_SECRET,))

CUSTOMER_ID = "cust_alice"
OTHER_CUSTOMER_ID = "cust_bob"
PROVIDER_ID = "prov_carol"

# Service-level tests run against a fixed clock
FIXED_NOW = datetime(2030, 1, 1, 9, 0)
BOOKING_DATE = date(2030, 1, 15)

TestSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine, expire_on_commit=False
)


@pytest.fixture(scope="function")
def db() -> Iterator[Session]:
    """Fresh schema and session per test."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()

    yield session

    session.rollback()
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_stripe() -> Iterator[FakeStripe]:
    fake = FakeStripe()
    with fake.installed():
        yield fake


@pytest.fixture
def payments(fake_stripe: FakeStripe) -> PaymentOrchestrator:
    return PaymentOrchestrator(keys=TEST_KEYS)


def make_config(**overrides: Any) -> Settings:
    return settings.model_copy(update=overrides)


@pytest.fixture
def service_factory(
    db: Session, payments: PaymentOrchestrator
) -> Callable[..., BookingService]:
    """Build a BookingService with config overrides, on the fixed clock."""

    def _build(**config_overrides: Any) -> BookingService:
        return BookingService(
            db,
            payment_orchestrator=payments,
            config=make_config(**config_overrides),
            clock=lambda: FIXED_NOW,
        )

    return _build


@pytest.fixture
def booking_service(service_factory: Callable[..., BookingService]) -> BookingService:
    return service_factory()


@pytest.fixture
def two_step_service(service_factory: Callable[..., BookingService]) -> BookingService:
    return service_factory(booking_flow="two_step")


@pytest.fixture
def reconciler(db: Session, payments: PaymentOrchestrator) -> WebhookReconciler:
    return WebhookReconciler(db, payment_orchestrator=payments)


@pytest.fixture
def catalog_service(db: Session) -> Service:
    service = Service(
        provider_id=PROVIDER_ID,
        name="Guitar lesson",
        price_cents=10000,
        duration_minutes=60,
        is_active=True,
    )
    db.add(service)
    db.commit()
    return service


@pytest.fixture
def payout_account(db: Session, fake_stripe: FakeStripe) -> ProviderPayoutAccount:
    fake_stripe.add_account("acct_provider_carol")
    account = ProviderPayoutAccount(provider_id=PROVIDER_ID, stripe_account_id="acct_provider_carol")
    db.add(account)
    db.commit()
    return account


@pytest.fixture
def make_booking(db: Session, fake_stripe: FakeStripe) -> Callable[..., Booking]:
    """
    Insert a booking directly, bypassing the request flow.

    Unless ``payment_intent_id`` is given, a matching authorization is
    seeded in the fake processor.
    """

    def _make(**overrides: Any) -> Booking:
        values: dict[str, Any] = {
            "customer_id": CUSTOMER_ID,
            "provider_id": PROVIDER_ID,
            "booking_date": BOOKING_DATE,
            "start_time": time(14, 0),
            "end_time": time(15, 0),
            "service_price_cents": 10000,
            "platform_fee_cents": 800,
            "currency": "usd",
            "flow": "single_step",
            "status": "pending",
            "payment_status": "authorized",
        }
        values.update(overrides)
        values.setdefault(
            "amount_total_cents", values["service_price_cents"] + values["platform_fee_cents"]
        )
        if "payment_intent_id" not in values:
            held = (
                values["platform_fee_cents"]
                if values["flow"] == "two_step"
                else values["amount_total_cents"]
            )
            values["payment_intent_id"] = fake_stripe.seed_intent(held)
        booking = Booking(**values)
        db.add(booking)
        db.commit()
        return booking

    return _make


def custom_request(**overrides: Any) -> BookingRequestCreate:
    values: dict[str, Any] = {
        "provider_id": PROVIDER_ID,
        "booking_date": BOOKING_DATE,
        "start_time": time(14, 0),
        "end_time": time(15, 0),
        "price_cents": 10000,
    }
    values.update(overrides)
    return BookingRequestCreate(**values)


@pytest.fixture
def client(db: Session, fake_stripe: FakeStripe) -> Iterator[TestClient]:
    """Create a test client bound to the test session."""

    def override_get_db() -> Iterator[Session]:
        yield db

    app.dependency_overrides[get_db] = override_get_db

    # Don't use context manager - lifespan is not needed
    test_client = TestClient(app)

    yield test_client

    app.dependency_overrides.clear()
    test_client.close()
