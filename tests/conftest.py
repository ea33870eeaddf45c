# tests/conftest.py
"""
Pytest configuration and shared fixtures.

Service tests run against a fresh in-memory SQLite schema per test. The
application module binds its engine at import time, so DATABASE_URL is
pointed at a throwaway SQLite file before anything from the package is
imported.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

_TEST_DB_DIR = tempfile.mkdtemp(prefix="rental_market_tests_")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite:///{os.path.join(_TEST_DB_DIR, 'app.db')}",
)
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rental_market.auth import CurrentUser
from rental_market.database import Base
from rental_market.models import (
    Coupon,
    CouponType,
    PeriodUnit,
    Product,
    ProductVariant,
    RentalPeriod,
    RentalPrice,
    User,
    UserRole,
)
from rental_market.observability.metrics import reset_metrics
from rental_market.services.checkout_gateway import CheckoutGateway, CheckoutSession
from rental_market.services.email_service import EmailDeliveryError, EmailService

RENTAL_START = datetime(2030, 3, 1, 10, 0)
RENTAL_END = RENTAL_START + timedelta(days=3)


@pytest.fixture(autouse=True)
def _fresh_metrics():
    reset_metrics()
    yield


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create a fresh database session for each test"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_user(db_session, role, name, company_name=None):
    user = User(
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.com",
        company_name=company_name,
        role=role,
    )
    db_session.add(user)
    db_session.commit()
    return user


def make_variant(db_session, vendor, quantity=5, day_price=100, hour_price=None, sku=None):
    day = db_session.query(RentalPeriod).filter_by(unit=PeriodUnit.DAY, duration=1).first()
    if day is None:
        day = RentalPeriod(name="Daily", unit=PeriodUnit.DAY, duration=1)
        db_session.add(day)
    product = Product(vendorID=vendor.userID, name=f"Camera {sku or quantity}", is_published=True)
    variant = ProductVariant(product=product, sku=sku or f"SKU-{vendor.userID}-{quantity}", quantity=quantity)
    variant.prices.append(RentalPrice(period=day, price=day_price))
    if hour_price is not None:
        hour = RentalPeriod(name="Hourly", unit=PeriodUnit.HOUR, duration=1)
        variant.prices.append(RentalPrice(period=hour, price=hour_price))
    db_session.add(product)
    db_session.commit()
    return variant


def make_coupon(db_session, code="SAVE300", coupon_type=CouponType.FLAT, value=300, max_discount=None, **kwargs):
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    coupon = Coupon(
        code=code,
        type=coupon_type,
        value=value,
        max_discount=max_discount,
        valid_from=kwargs.pop("valid_from", now - timedelta(days=1)),
        valid_till=kwargs.pop("valid_till", now + timedelta(days=30)),
        is_active=kwargs.pop("is_active", True),
    )
    db_session.add(coupon)
    db_session.commit()
    return coupon


def actor_for(user):
    return CurrentUser.from_user(user)


@pytest.fixture
def vendor(db_session):
    return make_user(db_session, UserRole.VENDOR, "Vendor One", company_name="Lens Hire Co")


@pytest.fixture
def other_vendor(db_session):
    return make_user(db_session, UserRole.VENDOR, "Vendor Two", company_name="Tent World")


@pytest.fixture
def customer(db_session):
    return make_user(db_session, UserRole.CUSTOMER, "Casey Customer")


@pytest.fixture
def admin(db_session):
    return make_user(db_session, UserRole.ADMIN, "Ada Admin")


@pytest.fixture
def variant(db_session, vendor):
    return make_variant(db_session, vendor, quantity=5, day_price=100)


class StubGateway(CheckoutGateway):
    """Records sessions; can be told to fail."""

    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def create_session(self, *, amount, currency, description, customer_email, metadata):
        self.calls.append({"amount": amount, "currency": currency, "metadata": metadata})
        if self.fail:
            raise RuntimeError("gateway down")
        session_id = f"cs_test_{len(self.calls)}"
        return CheckoutSession(
            session_id=session_id,
            url=f"https://pay.example.test/{session_id}",
            amount_minor=int(round(amount * 100)),
            currency=currency,
            metadata=dict(metadata),
        )


class FlakyEmailService(EmailService):
    """Fails the next `failures` sends, then behaves normally."""

    def __init__(self, failures=0):
        super().__init__()
        self.failures = failures

    def _send(self, to, subject, body, kind):
        if self.failures > 0:
            self.failures -= 1
            raise EmailDeliveryError("smtp unavailable")
        return super()._send(to, subject, body, kind)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def email_service():
    return FlakyEmailService()
