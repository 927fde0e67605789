import logging
import secrets
from datetime import timedelta

from sqlalchemy.orm import Session

from src import config
from src.domain import events
from src.domain.exceptions import (
    BookingNotFoundError,
    InvalidBookingRequestError,
    InvalidStateTransitionError,
)
from src.domain.state_machine import BookingStateMachine, BookingStatus
from src.infrastructure.db.models import Booking, utcnow
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.inventory_ledger import InventoryLedger
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


def generate_booking_reference() -> str:
    return secrets.token_hex(5).upper()


class BookingService:
    """Application service coordinating booking workflow.

    Every public method runs inside the caller's unit of work: the request
    session in the API, ``get_db_session()`` in background jobs. Inventory
    and status changes made by one call commit or roll back together.
    """

    def __init__(self, db: Session):
        self.db = db
        self.booking_repository = BookingRepository(db)
        self.ledger = InventoryLedger(db)
        self.payment_repository = PaymentRepository(db)
        self.outbox = OutboxRepository(db)

    # -----------------------------
    # Creation
    # -----------------------------
    def create_booking(
        self,
        event_id: str,
        ticket_type_id: str,
        user_id: str,
        quantity: int,
    ) -> Booking:
        if not event_id or not ticket_type_id or not user_id:
            raise InvalidBookingRequestError(
                "Please provide eventId, ticketTypeId and an authenticated user"
            )
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidBookingRequestError("quantity must be a positive integer")

        reservation = self.ledger.reserve(
            ticket_type_id,
            quantity,
            user_id,
            event_id=event_id,
        )

        booking = self.booking_repository.create_booking(
            user_id=user_id,
            event_id=event_id,
            ticket_type_id=ticket_type_id,
            quantity=quantity,
            total_price=reservation.total_price,
            currency=reservation.currency,
            booking_reference=self._allocate_reference(),
        )

        logger.info(
            "Booking reserved. booking_id=%s reference=%s ticket_type_id=%s quantity=%s sold=%s",
            booking.id,
            booking.booking_reference,
            ticket_type_id,
            quantity,
            reservation.sold_after,
        )
        return booking

    # -----------------------------
    # Reads
    # -----------------------------
    def get_booking(self, booking_id: str, user_id: str | None = None) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)

        if not booking or (user_id is not None and booking.user_id != user_id):
            raise BookingNotFoundError()

        return booking

    def get_by_reference(self, booking_reference: str) -> Booking:
        booking = self.booking_repository.get_by_reference(booking_reference)
        if not booking:
            raise BookingNotFoundError()
        return booking

    def list_user_bookings(self, user_id: str) -> list[Booking]:
        return self.booking_repository.list_for_user(user_id)

    def list_event_bookings(self, event_id: str) -> list[Booking]:
        return self.booking_repository.list_for_event(event_id)

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def cancel_booking(
        self,
        booking_id: str,
        actor: str,
        user_id: str | None = None,
        reason: str = "cancelled by user",
    ) -> Booking:
        booking = self.get_booking(booking_id, user_id=user_id)
        return self.cancel(booking, actor=actor, reason=reason)

    def cancel(self, booking: Booking, actor: str, reason: str) -> Booking:
        previous_status = booking.status

        self._transition(
            booking,
            BookingStatus.CANCELLED,
            cancelled_by=actor,
            cancellation_reason=reason,
        )
        self.ledger.release(booking.ticket_type_id, booking.quantity)
        self._emit(booking, events.BOOKING_CANCELLED, actor=actor, reason=reason)

        if (
            previous_status is BookingStatus.CONFIRMED
            and self.payment_repository.has_successful_payment(booking.id)
        ):
            self._emit(booking, events.BOOKING_REFUND_REQUIRED, actor=actor)

        logger.info(
            "Booking cancelled. booking_id=%s from=%s actor=%s",
            booking.id,
            previous_status.value,
            actor,
        )
        return booking

    def confirm(self, booking: Booking) -> Booking:
        self._transition(booking, BookingStatus.CONFIRMED)
        self._emit(booking, events.BOOKING_CONFIRMED)
        logger.info("Booking confirmed. booking_id=%s", booking.id)
        return booking

    def check_in(self, booking_id: str) -> Booking:
        booking = self.get_booking(booking_id)

        # Duplicate scans at the door are expected.
        if booking.status is BookingStatus.CHECKED_IN:
            return booking

        try:
            self._transition(
                booking,
                BookingStatus.CHECKED_IN,
                check_in_time=utcnow(),
            )
        except InvalidStateTransitionError:
            # Another scanner won the race.
            if booking.status is BookingStatus.CHECKED_IN:
                return booking
            raise
        self._emit(booking, events.BOOKING_CHECKED_IN)
        return booking

    def expire_pending(
        self,
        booking_id: str,
        timeout: timedelta | None = None,
    ) -> bool:
        """
        Cancel a pending booking whose reservation outlived ``timeout``.

        Returns True if this call released the booking. False means it is
        not yet due, has been paid, or another writer got there first.
        """
        booking = self.get_booking(booking_id)

        if booking.status is not BookingStatus.PENDING:
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=BookingStatus.CANCELLED.value,
            )

        if self.payment_repository.has_successful_payment(booking.id):
            logger.warning(
                "Pending booking already has a successful payment, not expiring. booking_id=%s",
                booking.id,
            )
            return False

        if timeout is None:
            timeout = timedelta(minutes=config.RESERVATION_TIMEOUT_MINUTES)
        claimed = self.booking_repository.compare_and_set_status(
            booking,
            BookingStatus.PENDING,
            BookingStatus.CANCELLED,
            created_before=utcnow() - timeout,
            cancelled_by=events.SYSTEM_TIMEOUT_ACTOR,
            cancellation_reason="reservation timed out",
        )
        if not claimed:
            return False

        self.ledger.release(booking.ticket_type_id, booking.quantity)
        self._emit(
            booking,
            events.BOOKING_CANCELLED,
            actor=events.SYSTEM_TIMEOUT_ACTOR,
            reason="reservation timed out",
        )
        logger.info(
            "Pending booking expired. booking_id=%s released=%s",
            booking.id,
            booking.quantity,
        )
        return True

    def request_refund(self, booking: Booking, tx_ref: str, reason: str) -> None:
        """Hand a captured payment that can no longer buy a ticket to refunds."""
        self._emit(
            booking,
            events.BOOKING_REFUND_REQUIRED,
            dedupe_key=f"payment:{tx_ref}:{events.BOOKING_REFUND_REQUIRED}",
            actor=events.SYSTEM_PAYMENT_ACTOR,
            tx_ref=tx_ref,
            reason=reason,
        )
        logger.warning(
            "Refund required. booking_id=%s tx_ref=%s reason=%s",
            booking.id,
            tx_ref,
            reason,
        )

    # -----------------------------
    # Internals
    # -----------------------------
    def _transition(self, booking: Booking, to_status: BookingStatus, **fields) -> None:
        from_status = booking.status
        try:
            BookingStateMachine.validate_transition(from_status, to_status)
        except InvalidStateTransitionError:
            logger.warning(
                "Rejected booking transition. booking_id=%s %s -> %s",
                booking.id,
                from_status.value,
                to_status.value,
            )
            raise

        if not self.booking_repository.compare_and_set_status(
            booking, from_status, to_status, **fields
        ):
            logger.warning(
                "Booking changed concurrently. booking_id=%s expected=%s now=%s",
                booking.id,
                from_status.value,
                booking.status.value,
            )
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=to_status.value,
            )

    def _allocate_reference(self) -> str:
        for _ in range(config.BOOKING_REFERENCE_MAX_ATTEMPTS):
            reference = generate_booking_reference()
            if not self.booking_repository.reference_exists(reference):
                return reference
            logger.warning("Booking reference collision, regenerating. reference=%s", reference)

        raise RuntimeError("could not allocate booking reference")

    def _emit(
        self,
        booking: Booking,
        event_type: str,
        dedupe_key: str | None = None,
        **extra,
    ) -> None:
        payload = {
            "booking_id": booking.id,
            "booking_reference": booking.booking_reference,
            "user_id": booking.user_id,
            "event_id": booking.event_id,
            "ticket_type_id": booking.ticket_type_id,
            "quantity": booking.quantity,
            "total_price": booking.total_price,
            "currency": booking.currency,
            "status": booking.status.value,
        }
        payload.update(extra)
        self.outbox.add(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type=event_type,
            payload=payload,
            dedupe_key=dedupe_key or f"booking:{booking.id}:{event_type}",
        )
