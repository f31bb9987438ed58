"""
Pytest configuration and shared fixtures for the booking core tests.
"""

import os
import sys
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

# Point the app at a throwaway SQLite file before main.py builds its Config
_test_db_dir = tempfile.mkdtemp(prefix="salon-booking-tests-")
os.environ["FLASK_ENV"] = "testing"
os.environ["TESTING"] = "True"
os.environ["DATABASE_TEST_URL"] = f"sqlite:///{Path(_test_db_dir) / 'booking_test.db'}"
os.environ["SCHEDULER_ENABLED"] = "False"
os.environ["NOTIFY_TEST_MODE"] = "True"

from main import create_app  # noqa: E402
from app.config import is_production_database  # noqa: E402
from app.extensions import db as database  # noqa: E402
from app.models import (  # noqa: E402
    Base,
    Coupon,
    Customer,
    Service,
    ServiceCategory,
    Settings,
    Stylist,
)
from app.services.notification_channels import ConsoleChannel, SendResult  # noqa: E402


class RecordingChannel(ConsoleChannel):
    """
    Fake channel that records every send.

    ``fail_times`` failures are returned before the first success;
    ``always_fail`` and ``raise_error`` make every attempt fail.
    """

    def __init__(self, name, contact_attr, fail_times=0, always_fail=False):
        super().__init__(name, contact_attr)
        self.fail_times = fail_times
        self.always_fail = always_fail
        self.raise_error = None
        self.attempts = []
        self.sent = []

    def send(self, recipient, template_id, params, idempotency_key):
        self.attempts.append((recipient, template_id, idempotency_key))
        if self.raise_error is not None:
            raise self.raise_error
        if self.always_fail or len(self.attempts) <= self.fail_times:
            return SendResult(False, reason="provider unavailable")
        self.sent.append(
            {
                "recipient": recipient,
                "template_id": template_id,
                "params": params,
                "key": idempotency_key,
            }
        )
        return SendResult(True, reference=f"fake-{len(self.sent)}")


@pytest.fixture(scope="session")
def app():
    """Create and configure a test app instance."""
    app = create_app()
    app.config.update({"TESTING": True, "RESERVATION_LOCK_TIMEOUT": 5})

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if is_production_database(db_uri) or not db_uri.startswith("sqlite"):
        print(f" DANGER: Database URL does not look like a test database: {db_uri}")
        sys.exit(1)

    yield app


@pytest.fixture(scope="session")
def db(app):
    """Create the test schema once per run."""
    with app.app_context():
        Base.metadata.drop_all(bind=database.engine)
        Base.metadata.create_all(bind=database.engine)

        yield database

        database.session.remove()
        Base.metadata.drop_all(bind=database.engine)


@pytest.fixture
def db_session(app, db):
    """
    A session inside a fresh app context.

    The code under test commits (and runs on other threads), so cleanup
    deletes every row instead of rolling back an outer transaction.
    """
    with app.app_context():
        yield database.session

        database.session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            database.session.execute(table.delete())
        database.session.commit()
        database.session.remove()


@pytest.fixture
def client(app, db_session):
    return app.test_client()


@pytest.fixture
def runner(app, db_session):
    return app.test_cli_runner()


@pytest.fixture
def recording_channels(app):
    """Swap the app's notification channels for recording fakes."""
    registry = app.extensions["notification_channels"]
    original = [registry.get(name) for name in registry.names()]

    email = RecordingChannel("email", "email")
    whatsapp = RecordingChannel("whatsapp", "phone")
    registry.register(email)
    registry.register(whatsapp)

    yield {"email": email, "whatsapp": whatsapp}

    for channel in original:
        registry.register(channel)


@pytest.fixture
def booking_settings(db_session):
    """Salon policy: 1 day lead time, 15-minute slots, 50% deposit."""
    settings = Settings(
        dp_type="percent",
        dp_amount=Decimal("50"),
        lead_time_days=1,
        slot_duration_minutes=15,
        cancellation_policy="Cancel at least 24 hours ahead.",
        reminder_schedule_days=[7, 1],
        templates={},
    )
    db_session.add(settings)
    db_session.commit()
    return settings


@pytest.fixture
def sample_customer(db_session):
    customer = Customer(
        full_name="Test Customer",
        email="customer@example.com",
        phone="+62 812-3456-7890",
        notify_email=True,
        notify_whatsapp=True,
    )
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def sample_stylist(db_session):
    stylist = Stylist(full_name="Sari Stylist", active=True)
    db_session.add(stylist)
    db_session.commit()
    return stylist


@pytest.fixture
def second_stylist(db_session):
    stylist = Stylist(full_name="Budi Stylist", active=True)
    db_session.add(stylist)
    db_session.commit()
    return stylist


@pytest.fixture
def sample_services(db_session):
    """Haircut (45 min), color (30 min) and a 15-minute nail service."""
    hair = ServiceCategory(name="Hair")
    nails = ServiceCategory(name="Nails")
    db_session.add_all([hair, nails])
    db_session.flush()

    services = {
        "haircut": Service(
            category_id=hair.id,
            name="Haircut",
            price=Decimal("150.00"),
            duration_minutes=45,
            active=True,
        ),
        "color": Service(
            category_id=hair.id,
            name="Hair Color",
            price=Decimal("200.00"),
            duration_minutes=30,
            active=True,
        ),
        "nails": Service(
            category_id=nails.id,
            name="Manicure",
            price=Decimal("50.00"),
            duration_minutes=15,
            active=True,
        ),
        "retired": Service(
            category_id=hair.id,
            name="Perm",
            price=Decimal("300.00"),
            duration_minutes=90,
            active=False,
        ),
    }
    db_session.add_all(services.values())
    db_session.commit()
    return services


@pytest.fixture
def sample_coupon(db_session):
    coupon = Coupon(
        code="HAIR10",
        description="10% off hair services",
        discount_type="percent",
        amount=Decimal("10"),
        min_spend=Decimal("0"),
        usage_limit=None,
        used_count=0,
        is_active=True,
        service_ids=[],
        category_ids=[],
    )
    db_session.add(coupon)
    db_session.commit()
    return coupon
