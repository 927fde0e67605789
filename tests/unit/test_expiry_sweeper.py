from datetime import timedelta

from src.application.booking_service import BookingService
from src.application.expiry_sweeper import ReservationExpirySweeper
from src.domain import events
from src.domain.state_machine import BookingStatus, PaymentStatus
from src.infrastructure.db.models import TicketType
from src.infrastructure.repositories.payment_repository import PaymentRepository


def _reload(db_session, model, ident):
    db_session.expire_all()
    return db_session.get(model, ident)


def test_sweep_releases_stale_pending_bookings_once(db_session, make_ticket_type, backdate_booking):
    ticket_type = make_ticket_type(quantity=10)
    service = BookingService(db_session)
    stale = service.create_booking("event-1", ticket_type.id, "user-1", 3)
    fresh = service.create_booking("event-1", ticket_type.id, "user-2", 2)
    db_session.commit()
    backdate_booking(stale.id, minutes=20)

    sweeper = ReservationExpirySweeper(timeout=timedelta(minutes=15))

    assert sweeper.sweep() == 1
    assert sweeper.sweep() == 0

    assert _reload(db_session, TicketType, ticket_type.id).sold == 2
    stale = service.get_booking(stale.id)
    assert stale.status is BookingStatus.CANCELLED
    assert stale.cancelled_by == events.SYSTEM_TIMEOUT_ACTOR
    assert service.get_booking(fresh.id).status is BookingStatus.PENDING


def test_sweep_skips_paid_and_confirmed_bookings(db_session, make_ticket_type, backdate_booking):
    ticket_type = make_ticket_type(quantity=10)
    service = BookingService(db_session)
    paid = service.create_booking("event-1", ticket_type.id, "user-1", 1)
    confirmed = service.create_booking("event-1", ticket_type.id, "user-2", 1)
    payments = PaymentRepository(db_session)
    transaction = payments.create_transaction(paid.id, "tx-paid", "chapa", paid.total_price, "ETB")
    payments.compare_and_set_status(transaction, PaymentStatus.PENDING, PaymentStatus.SUCCESS, None)
    service.confirm(confirmed)
    db_session.commit()
    backdate_booking(paid.id, minutes=60)
    backdate_booking(confirmed.id, minutes=60)

    sweeper = ReservationExpirySweeper(timeout=timedelta(minutes=15))

    assert sweeper.find_candidates() == []
    assert sweeper.sweep() == 0
    assert _reload(db_session, TicketType, ticket_type.id).sold == 2


def test_sweep_respects_batch_size(db_session, make_ticket_type, backdate_booking):
    ticket_type = make_ticket_type(quantity=10)
    service = BookingService(db_session)
    bookings = [
        service.create_booking("event-1", ticket_type.id, f"user-{i}", 1) for i in range(3)
    ]
    db_session.commit()
    for booking in bookings:
        backdate_booking(booking.id, minutes=30)

    sweeper = ReservationExpirySweeper(timeout=timedelta(minutes=15), batch_size=2)

    assert sweeper.sweep() == 2
    assert sweeper.sweep() == 1
    assert _reload(db_session, TicketType, ticket_type.id).sold == 0
