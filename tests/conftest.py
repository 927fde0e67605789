import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="ticketing-core-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["PAYMENT_WEBHOOK_VERIFY"] = "false"

from datetime import timedelta  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from src.infrastructure.db.models import Base, Booking, TicketType, utcnow  # noqa: E402
from src.infrastructure.db.session import SessionLocal, engine  # noqa: E402
from src.infrastructure.gateways.base import GatewayNotification, PaymentGateway  # noqa: E402


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


@pytest.fixture
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def client():
    from src.main import app

    app.dependency_overrides.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_ticket_type(db_session):
    def _make(
        quantity: int = 10,
        sold: int = 0,
        price: int = 5000,
        max_per_user: int | None = None,
        event_id: str = "event-1",
        **fields,
    ) -> TicketType:
        ticket_type = TicketType(
            event_id=event_id,
            name=fields.pop("name", "General"),
            price=price,
            is_free=fields.pop("is_free", price == 0),
            quantity=quantity,
            sold=sold,
            max_per_user=max_per_user,
            **fields,
        )
        db_session.add(ticket_type)
        db_session.commit()
        return ticket_type

    return _make


@pytest.fixture
def backdate_booking(db_session):
    def _backdate(booking_id: str, minutes: int) -> None:
        booking = db_session.get(Booking, booking_id)
        booking.created_at = utcnow() - timedelta(minutes=minutes)
        db_session.commit()

    return _backdate


class StubGateway(PaymentGateway):
    """Gateway double answering fetch_status from a dict."""

    supports_polling = True

    def __init__(self, name: str = "chapa", statuses: dict[str, str] | None = None):
        self.name = name
        self.statuses = statuses or {}
        self.fetched: list[str] = []

    def verify_signature(self, raw_body, headers) -> None:
        return None

    def parse_webhook(self, payload):
        return GatewayNotification(tx_ref=payload["tx_ref"], status=payload["status"], payload=payload)

    def fetch_status(self, tx_ref: str) -> GatewayNotification:
        self.fetched.append(tx_ref)
        return GatewayNotification(tx_ref=tx_ref, status=self.statuses.get(tx_ref, "pending"))


@pytest.fixture
def stub_gateway():
    return StubGateway()
