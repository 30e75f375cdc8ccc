# backend/tests/conftest.py
"""
Pytest configuration.

Every test gets its own file-backed SQLite database under ``tmp_path`` so
tests that open several sessions (or threads) see real commits and real
locking, and nothing leaks between tests.
"""

from datetime import date, datetime, time, timedelta, timezone
import os
from typing import Any, Callable, Iterator, List, Optional, Tuple
import unittest.mock

# Keep the real email provider unreachable from any test.
global_resend_mock = unittest.mock.patch("resend.Emails.send")
mocked_send = global_resend_mock.start()
mocked_send.return_value = {"id": "test-email-id"}

os.environ.setdefault("SITE_MODE", "test")

from fastapi.testclient import TestClient
import jwt
import pytest
from sqlalchemy.orm import Session

from consultbook import models  # noqa: F401 - registers every table
from consultbook.core.config import Settings, settings
from consultbook.core.timezone_utils import today_in, utc_now
from consultbook.database import Database
from consultbook.integrations.meeting_client import FakeMeetingClient
from consultbook.integrations.razorpay_client import FakeRazorpayClient
from consultbook.main import create_app
from consultbook.models.availability import WeeklyAvailabilityPattern
from consultbook.models.consultant import Client, Consultant
from consultbook.models.quotation import Quotation
from consultbook.services.notification_service import ConsoleEmailSender
from consultbook.services.payment_order_service import OrderHandle, PaymentOrderCoordinator
from consultbook.services.reservation_service import ReservationHandle, SlotReservationManager
from consultbook.services.settlement_service import PaymentSettlementService

from tests.helpers.constants import (
    CONSULTANT_TZ,
    KEY_SECRET,
    PERSONAL_PRICE,
    QUOTATION_AMOUNT,
    WEBHOOK_SECRET,
    WEBINAR_PRICE,
)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        environment="test",
        database_url=f"sqlite+pysqlite:///{tmp_path / 'consultbook_test.db'}",
        razorpay_key_id="rzp_test_fake",
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        email_provider="console",
        reservation_ttl_minutes=10,
    )


@pytest.fixture
def database(test_settings: Settings) -> Iterator[Database]:
    database = Database(test_settings.database_url).connect()
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def db(database: Database) -> Iterator[Session]:
    """
    Session for arranging data; commit after each write. Services get their
    own via ``session_factory`` and assertions read through ``load``.
    """
    session = database.new_session()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def session_factory(database: Database) -> Iterator[Callable[[], Session]]:
    opened = []

    def _open() -> Session:
        session = database.new_session()
        opened.append(session)
        return session

    yield _open
    for session in opened:
        session.close()


@pytest.fixture
def load(database: Database) -> Callable[..., Any]:
    """Read one row through a short-lived session so no lock outlives the read."""

    def _load(model: Any, entity_id: str) -> Any:
        with database.session_scope() as session:
            return session.get(model, entity_id)

    return _load


@pytest.fixture
def load_all(database: Database) -> Callable[..., List[Any]]:
    def _load_all(model: Any, **filters: Any) -> List[Any]:
        with database.session_scope() as session:
            return list(session.query(model).filter_by(**filters).all())

    return _load_all


@pytest.fixture
def gateway() -> FakeRazorpayClient:
    return FakeRazorpayClient(key_secret=KEY_SECRET)


@pytest.fixture
def meeting_client() -> FakeMeetingClient:
    return FakeMeetingClient()


@pytest.fixture
def email_sender() -> ConsoleEmailSender:
    return ConsoleEmailSender()


@pytest.fixture
def now() -> datetime:
    return utc_now().replace(microsecond=0)


@pytest.fixture
def next_monday(now: datetime) -> date:
    """A Monday at least a week out in the consultant's timezone."""
    day = today_in(CONSULTANT_TZ, now) + timedelta(days=7)
    return day + timedelta(days=(7 - day.weekday()) % 7)


@pytest.fixture
def test_consultant(db: Session) -> Consultant:
    consultant = Consultant(
        slug="asha-rao",
        name="Asha Rao",
        email="asha@example.com",
        personal_session_price=PERSONAL_PRICE,
        webinar_session_price=WEBINAR_PRICE,
        personal_session_title="Career strategy session",
        currency="INR",
        timezone=CONSULTANT_TZ,
        is_active=True,
    )
    db.add(consultant)
    db.commit()
    return consultant


@pytest.fixture
def monday_pattern(db: Session, test_consultant: Consultant) -> WeeklyAvailabilityPattern:
    """Mondays 10:00-12:00 local, PERSONAL: two one-hour slots."""
    pattern = WeeklyAvailabilityPattern(
        consultant_id=test_consultant.id,
        session_type="PERSONAL",
        day_of_week=1,
        start_time=time(10, 0),
        end_time=time(12, 0),
        timezone=CONSULTANT_TZ,
        is_active=True,
    )
    db.add(pattern)
    db.commit()
    return pattern


@pytest.fixture
def make_client(db: Session, test_consultant: Consultant) -> Callable[..., Client]:
    counter = {"n": 0}

    def _make(email: Optional[str] = None, name: str = "Ravi Kumar") -> Client:
        counter["n"] += 1
        client = Client(
            consultant_id=test_consultant.id,
            name=name,
            email=email or f"client{counter['n']}@example.com",
        )
        db.add(client)
        db.commit()
        return client

    return _make


@pytest.fixture
def make_quotation(db: Session, test_consultant: Consultant, now: datetime) -> Callable[..., Quotation]:
    """A quotation from the test consultant, SENT and valid for a week unless overridden."""

    def _make(**overrides: Any) -> Quotation:
        values: dict = {
            "consultant_id": test_consultant.id,
            "client_name": "Kavya Menon",
            "client_email": "kavya@example.com",
            "title": "Quarterly leadership coaching",
            "amount": QUOTATION_AMOUNT,
            "currency": "INR",
            "status": "SENT",
            "sent_at": now,
            "valid_until": now + timedelta(days=7),
        }
        values.update(overrides)
        quotation = Quotation(**values)
        db.add(quotation)
        db.commit()
        return quotation

    return _make


@pytest.fixture
def reserve(
    session_factory: Callable[[], Session],
    test_settings: Settings,
    test_consultant: Consultant,
    monday_pattern: WeeklyAvailabilityPattern,
    make_client: Callable[..., Client],
    next_monday: date,
    now: datetime,
) -> Callable[..., ReservationHandle]:
    def _reserve(
        start: time = time(10, 0),
        *,
        client: Optional[Client] = None,
        at: Optional[datetime] = None,
    ) -> ReservationHandle:
        client = client or make_client()
        manager = SlotReservationManager(session_factory(), test_settings)
        return manager.reserve(
            test_consultant.id,
            "PERSONAL",
            next_monday,
            start,
            client.id,
            amount=PERSONAL_PRICE,
            now=at or now,
        )

    return _reserve


@pytest.fixture
def open_order(
    session_factory: Callable[[], Session],
    test_settings: Settings,
    gateway: FakeRazorpayClient,
    now: datetime,
) -> Callable[..., OrderHandle]:
    def _open(reservation: ReservationHandle, *, at: Optional[datetime] = None) -> OrderHandle:
        coordinator = PaymentOrderCoordinator(session_factory(), gateway, test_settings)
        return coordinator.create_order(
            reservation.session_id, PERSONAL_PRICE, "client@example.com", now=at or now
        )

    return _open


@pytest.fixture
def confirm(
    session_factory: Callable[[], Session],
    test_settings: Settings,
    gateway: FakeRazorpayClient,
    reserve: Callable[..., ReservationHandle],
    open_order: Callable[..., OrderHandle],
    now: datetime,
) -> Callable[..., Tuple[ReservationHandle, OrderHandle]]:
    """Reserve, open an order, capture it and verify: a CONFIRMED session."""

    def _confirm(start: time = time(10, 0), **reserve_kwargs: Any) -> Tuple[ReservationHandle, OrderHandle]:
        reservation = reserve(start, **reserve_kwargs)
        order = open_order(reservation)
        payment_id = gateway.capture(order.order_id)
        PaymentSettlementService(session_factory(), gateway, test_settings).verify_payment(
            order.order_id, payment_id, gateway.sign(order.order_id, payment_id), now=now
        )
        return reservation, order

    return _confirm


@pytest.fixture
def client(
    test_settings: Settings,
    database: Database,
    gateway: FakeRazorpayClient,
    meeting_client: FakeMeetingClient,
    email_sender: ConsoleEmailSender,
) -> Iterator[TestClient]:
    """API client over the test database and in-memory remote services."""
    app = create_app(
        test_settings,
        database=database,
        gateway=gateway,
        meeting_client=meeting_client,
        email_sender=email_sender,
    )
    with TestClient(app) as test_client:
        yield test_client


def _token(subject: str, role: str) -> str:
    return jwt.encode(
        {"sub": subject, "role": role, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        settings.secret_key.get_secret_value(),
        algorithm=settings.algorithm,
    )


@pytest.fixture
def auth_headers_consultant(test_consultant: Consultant) -> dict:
    return {"Authorization": f"Bearer {_token(test_consultant.id, 'consultant')}"}


@pytest.fixture
def auth_headers_other_role(test_consultant: Consultant) -> dict:
    return {"Authorization": f"Bearer {_token(test_consultant.id, 'client')}"}
