# src/domain/events.py

# Domain events published through the outbox for notification and
# calendar collaborators.

BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_CANCELLED = "booking.cancelled"
BOOKING_CHECKED_IN = "booking.checked_in"
BOOKING_REFUND_REQUIRED = "booking.refund_required"
PAYMENT_CONFLICT_DETECTED = "payment.conflict_detected"

# Actors recorded on cancellations that no human initiated.
SYSTEM_TIMEOUT_ACTOR = "system/timeout"
SYSTEM_PAYMENT_ACTOR = "system/payment"
