from datetime import timedelta

from sqlalchemy import func, select

from src.application.booking_service import BookingService
from src.application.payment_reconciler import PaymentReconciler
from src.domain.state_machine import ACTIVE_BOOKING_STATUSES, BookingStatus
from src.infrastructure.db.models import Booking, TicketType


def _assert_sold_matches_held_bookings(db_session, ticket_type_id: str, expected_sold: int) -> None:
    db_session.expire_all()
    held = db_session.execute(
        select(func.coalesce(func.sum(Booking.quantity), 0))
        .where(Booking.ticket_type_id == ticket_type_id)
        .where(Booking.status.in_(list(ACTIVE_BOOKING_STATUSES)))
    ).scalar_one()
    sold = db_session.get(TicketType, ticket_type_id).sold

    assert sold == held
    assert sold == expected_sold


def test_sold_tracks_held_bookings_through_every_lifecycle_path(
    db_session, make_ticket_type, backdate_booking
):
    ticket_type = make_ticket_type(quantity=20, price=1000)
    service = BookingService(db_session)
    reconciler = PaymentReconciler(db_session)

    cancelled = service.create_booking("event-1", ticket_type.id, "user-1", 2)
    expired = service.create_booking("event-1", ticket_type.id, "user-2", 3)
    unpaid = service.create_booking("event-1", ticket_type.id, "user-3", 1)
    attended = service.create_booking("event-1", ticket_type.id, "user-4", 2)
    waiting = service.create_booking("event-1", ticket_type.id, "user-5", 4)
    db_session.commit()
    _assert_sold_matches_held_bookings(db_session, ticket_type.id, 12)

    service.cancel_booking(cancelled.id, actor="user-1", user_id="user-1")
    db_session.commit()
    _assert_sold_matches_held_bookings(db_session, ticket_type.id, 10)

    backdate_booking(expired.id, minutes=30)
    assert service.expire_pending(expired.id, timeout=timedelta(minutes=15)) is True
    db_session.commit()
    _assert_sold_matches_held_bookings(db_session, ticket_type.id, 7)

    reconciler.record_payment_initiated(unpaid.id, "tx-unpaid", None, None, "chapa")
    reconciler.handle_webhook("tx-unpaid", "failed", {"status": "failed"})
    db_session.commit()
    _assert_sold_matches_held_bookings(db_session, ticket_type.id, 6)

    reconciler.record_payment_initiated(attended.id, "tx-attended", None, None, "chapa")
    reconciler.handle_webhook("tx-attended", "success", {"status": "success"})
    db_session.commit()
    _assert_sold_matches_held_bookings(db_session, ticket_type.id, 6)

    service.check_in(attended.id)
    db_session.commit()
    _assert_sold_matches_held_bookings(db_session, ticket_type.id, 6)

    assert service.get_booking(attended.id).status is BookingStatus.CHECKED_IN
    assert service.get_booking(waiting.id).status is BookingStatus.PENDING
