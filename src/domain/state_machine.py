# src/domain/state_machine.py

from enum import Enum
from typing import ClassVar, Dict, Set, Type

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    CHECKED_IN = "checked-in"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Booking states that still hold inventory.
ACTIVE_BOOKING_STATUSES = frozenset(
    {
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
        BookingStatus.CHECKED_IN,
    }
)


class StateMachine:
    """
    Transition table validator shared by the booking and payment lifecycles.
    Subclasses declare the enum they govern and the legal transitions.
    """

    _STATUS_TYPE: ClassVar[Type[Enum]]
    _ALLOWED_TRANSITIONS: ClassVar[Dict[Enum, Set[Enum]]]

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    """
    Central lifecycle controller for booking transitions.

    pending -> confirmed -> checked-in
    pending -> cancelled
    confirmed -> cancelled  (refund path)
    """

    _STATUS_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS = {
        BookingStatus.PENDING: {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CONFIRMED: {
            BookingStatus.CHECKED_IN,
            BookingStatus.CANCELLED,
        },
        BookingStatus.CANCELLED: set(),
        BookingStatus.CHECKED_IN: set(),
    }


class PaymentStateMachine(StateMachine):
    """
    Payment transaction lifecycle. Only the reconciler moves a transaction.
    A success can later be refunded; every other outcome is final.
    """

    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS = {
        PaymentStatus.PENDING: {
            PaymentStatus.SUCCESS,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.SUCCESS: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        PaymentStatus.CANCELLED: set(),
        PaymentStatus.REFUNDED: set(),
    }

    @classmethod
    def is_settled(cls, status: PaymentStatus) -> bool:
        """
        Returns True once the gateway has given a definitive answer.
        A successful payment is settled even though it may still be refunded.
        """
        cls._ensure_valid_status(status)
        return status is not PaymentStatus.PENDING
