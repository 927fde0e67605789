# tests/unit/test_state_machine.py

import pytest

from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from src.domain.exceptions import InvalidStateTransitionError


# ---------------------
# VALID TRANSITIONS
# ---------------------

def test_valid_happy_path():
    assert BookingStateMachine.can_transition(
        BookingStatus.PENDING,
        BookingStatus.CONFIRMED,
    )

    assert BookingStateMachine.can_transition(
        BookingStatus.CONFIRMED,
        BookingStatus.CHECKED_IN,
    )


def test_cancellation_paths():
    assert BookingStateMachine.can_transition(
        BookingStatus.PENDING,
        BookingStatus.CANCELLED,
    )

    assert BookingStateMachine.can_transition(
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
    )


# ---------------------
# INVALID TRANSITIONS
# ---------------------

def test_cannot_check_in_unpaid_booking():
    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.PENDING,
            BookingStatus.CHECKED_IN,
        )


def test_terminal_state_cancelled():
    assert BookingStateMachine.is_terminal(BookingStatus.CANCELLED)

    with pytest.raises(InvalidStateTransitionError):
        BookingStateMachine.validate_transition(
            BookingStatus.CANCELLED,
            BookingStatus.CONFIRMED,
        )


def test_terminal_state_checked_in():
    assert BookingStateMachine.is_terminal(BookingStatus.CHECKED_IN)

    with pytest.raises(InvalidStateTransitionError) as exc_info:
        BookingStateMachine.validate_transition(
            BookingStatus.CHECKED_IN,
            BookingStatus.CANCELLED,
        )

    assert exc_info.value.from_state == "checked-in"
    assert exc_info.value.code == "INVALID_STATE_TRANSITION"


def test_invalid_type_guard():
    with pytest.raises(TypeError):
        BookingStateMachine.validate_transition(
            "pending",  # invalid type
            BookingStatus.CONFIRMED,
        )


# ---------------------
# PAYMENT LIFECYCLE
# ---------------------

def test_payment_outcomes_from_pending():
    for outcome in (PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        assert PaymentStateMachine.can_transition(PaymentStatus.PENDING, outcome)


def test_only_success_can_be_refunded():
    assert PaymentStateMachine.can_transition(PaymentStatus.SUCCESS, PaymentStatus.REFUNDED)
    assert not PaymentStateMachine.can_transition(PaymentStatus.FAILED, PaymentStatus.REFUNDED)
    assert not PaymentStateMachine.can_transition(PaymentStatus.PENDING, PaymentStatus.REFUNDED)


def test_payment_settled():
    assert not PaymentStateMachine.is_settled(PaymentStatus.PENDING)
    assert PaymentStateMachine.is_settled(PaymentStatus.SUCCESS)
    assert not PaymentStateMachine.is_terminal(PaymentStatus.SUCCESS)


def test_payment_machine_rejects_booking_status():
    with pytest.raises(TypeError):
        PaymentStateMachine.can_transition(BookingStatus.PENDING, PaymentStatus.SUCCESS)
