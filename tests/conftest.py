"""Shared pytest fixtures for overstay engine tests."""

import asyncio
import os
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from kitchenhub import models_overstay  # noqa: E402,F401
from kitchenhub.database import Base  # noqa: E402
from kitchenhub.domain.overstays.charge_executor import ChargePolicy  # noqa: E402
from kitchenhub.domain.overstays.gateway import PaymentGateway  # noqa: E402
from kitchenhub.domain.overstays.notifications import NotificationService, Recipient  # noqa: E402
from kitchenhub.domain.overstays.scanner import OverstayScanner  # noqa: E402
from kitchenhub.domain.overstays.service import OverstayService  # noqa: E402
from kitchenhub.models import Kitchen, Location, StorageBooking, StorageListing, User  # noqa: E402

TODAY = date(2026, 3, 10)


class FakeGateway(PaymentGateway):
    """In-memory gateway that deduplicates by idempotency key like the real one"""

    def __init__(self):
        self.calls = []
        self.charges = {}  # idempotency key -> {"reference", "amount_cents"}
        self.failures = []  # exceptions raised by upcoming new charges, in order
        self.hang_after_charge = 0  # debit, then never answer (caller times out)
        self.links = []

    def fail_with(self, *errors):
        self.failures.extend(errors)

    async def charge(self, customer_token, payment_method_token, amount_cents, idempotency_key, metadata):
        self.calls.append(
            {
                "customer": customer_token,
                "payment_method": payment_method_token,
                "amount_cents": amount_cents,
                "idempotency_key": idempotency_key,
                "metadata": metadata,
            }
        )
        if idempotency_key in self.charges:
            return self.charges[idempotency_key]["reference"]
        if self.failures:
            raise self.failures.pop(0)

        reference = f"pi_test_{len(self.charges) + 1}"
        self.charges[idempotency_key] = {"reference": reference, "amount_cents": amount_cents}
        if self.hang_after_charge:
            self.hang_after_charge -= 1
            await asyncio.sleep(5)
        return reference

    async def create_payment_link(self, customer_token, amount_cents, description, metadata):
        url = f"https://pay.test/{metadata['overstay_id']}"
        self.links.append({"url": url, "amount_cents": amount_cents})
        return url


class RecordingNotifier(NotificationService):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, recipient: Recipient, template_id: str, data: dict) -> None:
        if self.fail:
            raise RuntimeError("mail server down")
        self.sent.append((recipient.email, template_id, data))

    def templates_for(self, email: str) -> list[str]:
        return [template for to, template, _ in self.sent if to == email]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def policy() -> ChargePolicy:
    return ChargePolicy(
        escalation_threshold=3,
        max_attempts=5,
        timeout_seconds=0.2,
        transport_retries=0,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def scanner(gateway, notifier, policy) -> OverstayScanner:
    return OverstayScanner(notifier, gateway, policy)


@pytest.fixture
def service(db, gateway, notifier, policy) -> OverstayService:
    return OverstayService(db, gateway, notifier, policy)


@pytest.fixture
def marketplace(db):
    """Users, one location/kitchen/listing; scenario defaults (grace 2, 20%, max 5 days)"""
    manager = User(email="manager@kitchen.test", full_name="Maya Manager", role="manager")
    other_manager = User(email="other@kitchen.test", full_name="Omar Other", role="manager")
    admin = User(email="admin@kitchenhub.test", full_name="Ada Admin", role="admin")
    chef = User(
        email="chef@food.test",
        full_name="Carla Chef",
        role="chef",
        stripe_customer_id="cus_chef",
    )
    db.add_all([manager, other_manager, admin, chef])
    db.flush()

    location = Location(
        name="Downtown Commissary",
        manager_id=manager.id,
        overstay_grace_period_days=2,
        overstay_penalty_rate=Decimal("0.2000"),
        overstay_max_penalty_days=5,
        overstay_policy_text="Items left past the grace period incur daily penalties.",
    )
    other_location = Location(name="Uptown Kitchen", manager_id=other_manager.id)
    db.add_all([location, other_location])
    db.flush()

    kitchen = Kitchen(location_id=location.id, name="Main Kitchen", tax_rate_percent=Decimal("0"))
    db.add(kitchen)
    db.flush()

    listing = StorageListing(
        kitchen_id=kitchen.id, name="Walk-in Cooler Shelf", storage_type="cold", daily_rate_cents=5000
    )
    db.add(listing)
    db.commit()

    return {
        "manager": manager,
        "other_manager": other_manager,
        "admin": admin,
        "chef": chef,
        "location": location,
        "kitchen": kitchen,
        "listing": listing,
    }


@pytest.fixture
def make_booking(db, marketplace):
    def _make(
        days_overdue: int = 4,
        today: date = TODAY,
        status: str = "confirmed",
        checkout_status: Optional[str] = None,
        with_payment_method: bool = True,
        listing: Optional[StorageListing] = None,
    ) -> StorageBooking:
        end_date = today - timedelta(days=days_overdue)
        booking = StorageBooking(
            storage_listing_id=(listing or marketplace["listing"]).id,
            chef_id=marketplace["chef"].id,
            start_date=end_date - timedelta(days=30),
            end_date=end_date,
            status=status,
            checkout_status=checkout_status,
            stripe_customer_id="cus_chef" if with_payment_method else None,
            stripe_payment_method_id="pm_card_visa" if with_payment_method else None,
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def detect(db, scanner, make_booking):
    """Create a booking and run a scan so it has an overstay record"""

    async def _detect(today: date = TODAY, **booking_kwargs):
        booking = make_booking(today=today, **booking_kwargs)
        await scanner.scan(db, today)
        db.expire_all()
        return booking.overstay_records[0]

    return _detect
