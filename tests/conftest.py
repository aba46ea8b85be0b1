# ================================
# TEST FIXTURES (tests/conftest.py)
# ================================

import os

# Settings are read at import time; point them at an in-memory database first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_OVERSTAY_DETECTION"] = "false"
os.environ["OVERSTAY_TIMEZONE"] = "UTC"
os.environ["PENALTY_CURRENCY"] = "cad"

from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from overstay_engine.models import (
    Base, User, Location, Kitchen, StorageListing, StorageBooking, PlatformSetting, OverstayRecord
)
from overstay_engine.schemas.overstay import PaymentResult, ManagerPenaltyDecision
from overstay_engine.services.overstay_detection_service import OverstayDetectionService
from overstay_engine.services.manager_decision_service import ManagerDecisionService

# Fixed "today" for deterministic day counts
TODAY = date(2026, 3, 15)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


class Factory:
    """Creates committed storage-domain rows"""

    def __init__(self, db):
        self.db = db

    def _save(self, obj):
        self.db.add(obj)
        self.db.commit()
        self.db.refresh(obj)
        return obj

    def chef(self, username="chef@example.com", full_name="Casey Chef", stripe_customer_id=None):
        return self._save(User(
            username=username,
            role="chef",
            full_name=full_name,
            stripe_customer_id=stripe_customer_id
        ))

    def manager(self, username="manager@example.com"):
        return self._save(User(username=username, role="manager", full_name="Morgan Manager"))

    def location(self, name="Downtown Kitchen Hub", **overrides):
        return self._save(Location(name=name, **overrides))

    def kitchen(self, location=None, name="Main Kitchen"):
        location = location or self.location()
        return self._save(Kitchen(location_id=location.id, name=name))

    def listing(self, kitchen=None, name="Cold Locker A", base_price=Decimal("2000"), **overrides):
        kitchen = kitchen or self.kitchen()
        return self._save(StorageListing(
            kitchen_id=kitchen.id,
            name=name,
            storage_type="cold",
            pricing_model="daily",
            base_price=base_price,
            **overrides
        ))

    def booking(
        self,
        listing=None,
        chef=None,
        days_overdue=5,
        booked_days=30,
        status="confirmed",
        payment_status="paid",
        checkout_status=None,
        total_price=None,
        stripe_customer_id="cus_test_chef",
        stripe_payment_method_id="pm_test_card",
        today=TODAY
    ):
        listing = listing or self.listing()
        chef = chef or self.chef(username=f"chef{self._count(User)}@example.com")
        end_date = datetime.combine(today - timedelta(days=days_overdue), time(10, 0))
        return self._save(StorageBooking(
            storage_listing_id=listing.id,
            chef_id=chef.id,
            start_date=end_date - timedelta(days=booked_days),
            end_date=end_date,
            total_price=total_price,
            status=status,
            payment_status=payment_status,
            checkout_status=checkout_status,
            stripe_customer_id=stripe_customer_id,
            stripe_payment_method_id=stripe_payment_method_id
        ))

    def platform_setting(self, key, value):
        return self._save(PlatformSetting(key=key, value=value))

    def _count(self, model):
        return self.db.query(model).count()


@pytest.fixture
def factory(db):
    return Factory(db)


def detect_record(db, booking, today=TODAY) -> OverstayRecord:
    """Run a sweep and return the record created for ``booking``"""
    OverstayDetectionService.detect_overstays(db, today=today)
    return db.query(OverstayRecord).filter(OverstayRecord.storage_booking_id == booking.id).one()


def decide(db, record, action, manager_id=1, **kwargs):
    return ManagerDecisionService.process_decision(db, ManagerPenaltyDecision(
        overstay_record_id=record.id,
        manager_id=manager_id,
        action=action,
        **kwargs
    ))


@pytest.fixture
def manager(factory):
    return factory.manager()


@pytest.fixture
def pending_record(db, factory):
    """5 days overdue, 3 grace days, 2000 cents/day, 10% -> 4400 cents, pending_review"""
    booking = factory.booking(days_overdue=5)
    return detect_record(db, booking)


@pytest.fixture
def approved_record(db, pending_record, manager):
    decide(db, pending_record, "approve", manager_id=manager.id)
    db.refresh(pending_record)
    return pending_record


class FakeGateway:
    """Payment processor double recording every charge request"""

    def __init__(self, result=None, configured=True, error=None):
        self.result = result or PaymentResult(
            success=True,
            payment_intent_id="pi_test_123",
            charge_id="ch_test_123"
        )
        self.configured = configured
        self.error = error
        self.calls = []

    def is_configured(self):
        return self.configured

    def create_charge(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def declining_gateway():
    return FakeGateway(result=PaymentResult(
        success=False,
        payment_intent_id="pi_test_declined",
        failure_reason="Your card was declined."
    ))
