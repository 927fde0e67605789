import logging
from datetime import timedelta

from src import config
from src.application.booking_service import BookingService
from src.domain.exceptions import InvalidStateTransitionError
from src.infrastructure.db.models import utcnow
from src.infrastructure.db.session import get_db_session
from src.infrastructure.repositories.booking_repository import BookingRepository

logger = logging.getLogger(__name__)


class ReservationExpirySweeper:
    """
    Releases inventory held by pending bookings that were never paid.

    Safe to run from several workers at once: each expiry is claimed with
    a status compare-and-set, so a booking is released at most once.
    """

    def __init__(
        self,
        session_factory=get_db_session,
        timeout: timedelta | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        if timeout is None:
            timeout = timedelta(minutes=config.RESERVATION_TIMEOUT_MINUTES)
        self.timeout = timeout
        self.batch_size = batch_size or config.SWEEPER_BATCH_SIZE

    def find_candidates(self) -> list[str]:
        with self.session_factory() as db:
            return BookingRepository(db).find_expired_pending_ids(
                cutoff=utcnow() - self.timeout,
                limit=self.batch_size,
            )

    def sweep(self) -> int:
        """Expire one batch of stale bookings. Returns how many were released."""

        released = 0
        for booking_id in self.find_candidates():
            try:
                with self.session_factory() as db:
                    if BookingService(db).expire_pending(booking_id, timeout=self.timeout):
                        released += 1
            except InvalidStateTransitionError:
                # Confirmed or cancelled since the candidate query ran.
                logger.info("Booking no longer pending, skipped. booking_id=%s", booking_id)

        if released:
            logger.info("Reservation sweep released bookings. count=%s", released)
        return released
