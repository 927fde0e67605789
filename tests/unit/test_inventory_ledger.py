from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from src.domain.exceptions import (
    InsufficientInventoryError,
    InvalidBookingRequestError,
    InvalidCapacityChangeError,
    PerUserLimitExceededError,
    SaleWindowClosedError,
    TicketTypeNotFoundError,
    TicketTypeUnavailableError,
)
from src.infrastructure.db.models import TicketType, utcnow
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.inventory_ledger import InventoryLedger


def _sold(db_session, ticket_type_id: str) -> int:
    db_session.expire_all()
    return db_session.get(TicketType, ticket_type_id).sold


def test_reserve_increments_sold_and_prices_reservation(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, price=2500)

    result = InventoryLedger(db_session).reserve(ticket_type.id, 3, "user-1")
    db_session.commit()

    assert result.sold_after == 3
    assert result.unit_price == 2500
    assert result.total_price == 7500
    assert result.currency == "ETB"
    assert _sold(db_session, ticket_type.id) == 3


def test_free_ticket_type_reserves_at_zero(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=5, price=0)

    result = InventoryLedger(db_session).reserve(ticket_type.id, 2, "user-1")

    assert result.total_price == 0


@pytest.mark.parametrize("price, is_free", [(0, False), (1500, True)])
def test_free_flag_must_match_zero_price(db_session, price, is_free):
    db_session.add(
        TicketType(event_id="event-1", name="Mismatched", price=price, is_free=is_free, quantity=5)
    )

    with pytest.raises(IntegrityError):
        db_session.commit()


def test_reserve_rejects_more_than_remaining(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, sold=9)

    with pytest.raises(InsufficientInventoryError):
        InventoryLedger(db_session).reserve(ticket_type.id, 2, "user-1")

    db_session.rollback()
    assert _sold(db_session, ticket_type.id) == 9


def test_reserve_can_take_exactly_the_last_tickets(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, sold=8)

    result = InventoryLedger(db_session).reserve(ticket_type.id, 2, "user-1")

    assert result.sold_after == 10


def test_reserve_rejects_non_positive_quantity(db_session, make_ticket_type):
    ticket_type = make_ticket_type()

    with pytest.raises(InvalidBookingRequestError):
        InventoryLedger(db_session).reserve(ticket_type.id, 0, "user-1")


def test_reserve_unknown_ticket_type(db_session):
    with pytest.raises(TicketTypeNotFoundError):
        InventoryLedger(db_session).reserve("missing", 1, "user-1")


def test_reserve_ticket_type_of_another_event(db_session, make_ticket_type):
    ticket_type = make_ticket_type(event_id="event-1")

    with pytest.raises(TicketTypeNotFoundError):
        InventoryLedger(db_session).reserve(ticket_type.id, 1, "user-1", event_id="event-2")


def test_reserve_inactive_ticket_type(db_session, make_ticket_type):
    ticket_type = make_ticket_type(is_active=False)

    with pytest.raises(TicketTypeUnavailableError):
        InventoryLedger(db_session).reserve(ticket_type.id, 1, "user-1")


def test_reserve_outside_sale_window(db_session, make_ticket_type):
    not_yet = make_ticket_type(name="Later", available_from=utcnow() + timedelta(days=1))
    ended = make_ticket_type(name="Over", available_to=utcnow() - timedelta(days=1))

    ledger = InventoryLedger(db_session)
    with pytest.raises(SaleWindowClosedError):
        ledger.reserve(not_yet.id, 1, "user-1")
    with pytest.raises(SaleWindowClosedError):
        ledger.reserve(ended.id, 1, "user-1")


def test_per_user_cap_counts_existing_bookings(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, max_per_user=2)
    ledger = InventoryLedger(db_session)

    ledger.reserve(ticket_type.id, 2, "user-1")
    BookingRepository(db_session).create_booking(
        user_id="user-1",
        event_id=ticket_type.event_id,
        ticket_type_id=ticket_type.id,
        quantity=2,
        total_price=10000,
        currency="ETB",
        booking_reference="AAAAAAAAAA",
    )
    db_session.commit()

    with pytest.raises(PerUserLimitExceededError) as exc_info:
        ledger.reserve(ticket_type.id, 1, "user-1")
    assert exc_info.value.max_per_user == 2

    # Other buyers are unaffected.
    assert ledger.reserve(ticket_type.id, 2, "user-2").sold_after == 4


def test_release_decrements_and_floors_at_zero(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, sold=3)
    ledger = InventoryLedger(db_session)

    ledger.release(ticket_type.id, 2)
    db_session.commit()
    assert _sold(db_session, ticket_type.id) == 1

    ledger.release(ticket_type.id, 5)
    db_session.commit()
    assert _sold(db_session, ticket_type.id) == 0


def test_stats(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, sold=4)

    stats = InventoryLedger(db_session).stats(ticket_type.id)

    assert stats["available"] == 6
    assert stats["sold"] == 4
    assert stats["is_active"] is True


def test_increase_capacity_only_grows(db_session, make_ticket_type):
    ticket_type = make_ticket_type(quantity=10, sold=10)
    ledger = InventoryLedger(db_session)

    assert ledger.increase_capacity(ticket_type.id, 15).quantity == 15
    with pytest.raises(InvalidCapacityChangeError):
        ledger.increase_capacity(ticket_type.id, 12)


def test_set_active_soft_disables(db_session, make_ticket_type):
    ticket_type = make_ticket_type()
    ledger = InventoryLedger(db_session)

    ledger.set_active(ticket_type.id, False)

    with pytest.raises(TicketTypeUnavailableError):
        ledger.reserve(ticket_type.id, 1, "user-1")
