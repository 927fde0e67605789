import threading

from src.application.booking_service import BookingService
from src.domain.exceptions import InsufficientInventoryError
from src.infrastructure.db.models import TicketType
from src.infrastructure.db.session import get_db_session


def _race(ticket_type: TicketType, buyers: list[str], quantity: int = 1) -> tuple[list, list]:
    barrier = threading.Barrier(len(buyers))
    booked, rejected = [], []
    lock = threading.Lock()

    def attempt(user_id: str) -> None:
        barrier.wait()
        try:
            with get_db_session() as db:
                booking = BookingService(db).create_booking(
                    ticket_type.event_id, ticket_type.id, user_id, quantity
                )
                booking_id = booking.id
        except InsufficientInventoryError:
            with lock:
                rejected.append(user_id)
            return
        with lock:
            booked.append(booking_id)

    threads = [threading.Thread(target=attempt, args=(user_id,)) for user_id in buyers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    return booked, rejected


def test_last_ticket_goes_to_exactly_one_buyer(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, sold=9)

    booked, rejected = _race(ticket_type, ["user-a", "user-b"])

    assert len(booked) == 1
    assert len(rejected) == 1
    db_session.expire_all()
    assert db_session.get(TicketType, ticket_type.id).sold == 10


def test_many_buyers_never_oversell(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=5)

    booked, rejected = _race(ticket_type, [f"user-{i}" for i in range(8)])

    assert len(booked) == 5
    assert len(rejected) == 3
    db_session.expire_all()
    assert db_session.get(TicketType, ticket_type.id).sold == 5
