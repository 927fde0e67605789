# src/infrastructure/repositories/inventory_ledger.py

import logging
from datetime import datetime

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from src.domain.exceptions import (
    InsufficientInventoryError,
    InvalidBookingRequestError,
    InvalidCapacityChangeError,
    PerUserLimitExceededError,
    SaleWindowClosedError,
    TicketTypeNotFoundError,
    TicketTypeUnavailableError,
)
from src.domain.results import ReservationResult
from src.domain.state_machine import BookingStatus
from src.infrastructure.db.models import Booking, TicketType, as_utc, utcnow

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Per-ticket-type `sold` counter.

    Every mutation is a single conditional UPDATE evaluated by the database,
    so concurrent reservations for the last tickets are serialized by the
    storage engine and `sold` can never pass `quantity`.
    """

    def __init__(self, db: Session):
        self.db = db

    def get(self, ticket_type_id: str) -> TicketType | None:
        stmt = select(TicketType).where(TicketType.id == ticket_type_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def lock_ticket_type(self, ticket_type_id: str) -> TicketType:
        """
        SELECT ... FOR UPDATE
        Serializes reservations for one ticket type on databases with row locks.
        """

        stmt = (
            select(TicketType)
            .where(TicketType.id == ticket_type_id)
            .with_for_update()
        )

        ticket_type = self.db.execute(stmt).scalar_one_or_none()

        if not ticket_type:
            raise TicketTypeNotFoundError()

        return ticket_type

    def user_held_quantity(self, user_id: str, ticket_type_id: str) -> int:
        stmt = (
            select(func.coalesce(func.sum(Booking.quantity), 0))
            .where(Booking.user_id == user_id)
            .where(Booking.ticket_type_id == ticket_type_id)
            .where(Booking.status != BookingStatus.CANCELLED)
        )
        return int(self.db.execute(stmt).scalar_one())

    def reserve(
        self,
        ticket_type_id: str,
        quantity: int,
        user_id: str,
        event_id: str | None = None,
    ) -> ReservationResult:
        if quantity < 1:
            raise InvalidBookingRequestError("quantity must be at least 1")

        ticket_type = self.lock_ticket_type(ticket_type_id)
        if event_id is not None and ticket_type.event_id != event_id:
            raise TicketTypeNotFoundError()

        self._ensure_on_sale(ticket_type, utcnow())

        if ticket_type.max_per_user is not None:
            held = self.user_held_quantity(user_id, ticket_type_id)
            if held + quantity > ticket_type.max_per_user:
                logger.info(
                    "Per-user cap hit. user_id=%s ticket_type_id=%s held=%s requested=%s max=%s",
                    user_id,
                    ticket_type_id,
                    held,
                    quantity,
                    ticket_type.max_per_user,
                )
                raise PerUserLimitExceededError(ticket_type.max_per_user)

        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .where(TicketType.sold + quantity <= TicketType.quantity)
            .values(sold=TicketType.sold + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            logger.info(
                "Reservation rejected, sold out. ticket_type_id=%s requested=%s",
                ticket_type_id,
                quantity,
            )
            raise InsufficientInventoryError()

        self.db.refresh(ticket_type)

        unit_price = 0 if ticket_type.is_free else ticket_type.price
        return ReservationResult(
            ticket_type_id=ticket_type.id,
            event_id=ticket_type.event_id,
            quantity=quantity,
            unit_price=unit_price,
            total_price=unit_price * quantity,
            currency=ticket_type.currency,
            sold_after=ticket_type.sold,
        )

    def release(self, ticket_type_id: str, quantity: int) -> None:
        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .values(
                sold=case(
                    (TicketType.sold >= quantity, TicketType.sold - quantity),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)

        if result.rowcount != 1:
            logger.error(
                "Release targeted a missing ticket type. ticket_type_id=%s quantity=%s",
                ticket_type_id,
                quantity,
            )
            return

        self._expire_cached(ticket_type_id)

    def stats(self, ticket_type_id: str) -> dict:
        ticket_type = self.get(ticket_type_id)
        if not ticket_type:
            raise TicketTypeNotFoundError()

        return {
            "ticket_type_id": ticket_type.id,
            "event_id": ticket_type.event_id,
            "quantity": ticket_type.quantity,
            "sold": ticket_type.sold,
            "available": ticket_type.quantity - ticket_type.sold,
            "is_active": ticket_type.is_active,
        }

    def increase_capacity(self, ticket_type_id: str, new_quantity: int) -> TicketType:
        ticket_type = self.lock_ticket_type(ticket_type_id)

        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .where(TicketType.quantity <= new_quantity)
            .values(quantity=new_quantity)
            .execution_options(synchronize_session=False)
        )
        if self.db.execute(stmt).rowcount != 1:
            raise InvalidCapacityChangeError(
                f"Capacity can only be increased (current {ticket_type.quantity})"
            )

        self.db.refresh(ticket_type)
        logger.info(
            "Capacity raised. ticket_type_id=%s quantity=%s",
            ticket_type_id,
            ticket_type.quantity,
        )
        return ticket_type

    def set_active(self, ticket_type_id: str, active: bool) -> TicketType:
        ticket_type = self.lock_ticket_type(ticket_type_id)
        ticket_type.is_active = active
        self.db.flush()
        return ticket_type

    def _expire_cached(self, ticket_type_id: str) -> None:
        # The UPDATE bypassed the identity map; drop any stale copy.
        key = self.db.identity_key(TicketType, ticket_type_id)
        cached = self.db.identity_map.get(key)
        if cached is not None:
            self.db.expire(cached)

    @staticmethod
    def _ensure_on_sale(ticket_type: TicketType, now: datetime) -> None:
        if not ticket_type.is_active:
            raise TicketTypeUnavailableError()

        available_from = as_utc(ticket_type.available_from)
        available_to = as_utc(ticket_type.available_to)
        if available_from is not None and now < available_from:
            raise SaleWindowClosedError("Ticket sales have not started yet")
        if available_to is not None and now > available_to:
            raise SaleWindowClosedError("Ticket sales have ended")
