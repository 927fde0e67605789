# src/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import exists, select, update

from src.infrastructure.db.models import Booking, PaymentTransaction
from src.domain.state_machine import BookingStatus, PaymentStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_reference(
        self,
        booking_reference: str,
    ) -> Booking | None:

        stmt = select(Booking).where(
            Booking.booking_reference == booking_reference
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def reference_exists(self, booking_reference: str) -> bool:
        stmt = select(
            exists().where(Booking.booking_reference == booking_reference)
        )
        return bool(self.db.execute(stmt).scalar())

    def list_for_user(self, user_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_event(self, event_id: str) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.event_id == event_id)
            .order_by(Booking.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        ticket_type_id: str,
        quantity: int,
        total_price: int,
        currency: str,
        booking_reference: str,
    ) -> Booking:

        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            total_price=total_price,
            currency=currency,
            booking_reference=booking_reference,
            status=BookingStatus.PENDING,
        )

        self.db.add(booking)
        self.db.flush()
        return booking

    def compare_and_set_status(
        self,
        booking: Booking,
        expected: BookingStatus,
        new_status: BookingStatus,
        created_before: datetime | None = None,
        **fields,
    ) -> bool:
        """
        UPDATE bookings SET status = :new WHERE id = :id AND status = :expected

        Returns False when another writer moved the booking first; the
        caller must not run side effects in that case.
        """

        stmt = (
            update(Booking)
            .where(Booking.id == booking.id)
            .where(Booking.status == expected)
        )
        if created_before is not None:
            stmt = stmt.where(Booking.created_at < created_before)

        stmt = stmt.values(status=new_status, **fields).execution_options(
            synchronize_session=False
        )

        claimed = self.db.execute(stmt).rowcount == 1
        self.db.refresh(booking)
        return claimed

    def find_expired_pending_ids(
        self,
        cutoff: datetime,
        limit: int,
    ) -> list[str]:
        paid = exists().where(
            PaymentTransaction.booking_id == Booking.id,
            PaymentTransaction.status == PaymentStatus.SUCCESS,
        )
        stmt = (
            select(Booking.id)
            .where(Booking.status == BookingStatus.PENDING)
            .where(Booking.created_at < cutoff)
            .where(~paid)
            .order_by(Booking.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
