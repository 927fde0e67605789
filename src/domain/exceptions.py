class TicketingError(Exception):
    """
    Base exception for all domain-level errors
    inside the ticketing core.

    Subclasses carry a stable machine-readable ``code`` and the HTTP
    status the API layer should answer with.
    """

    code = "TICKETING_ERROR"
    status_code = 400

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.__doc__.strip()
        super().__init__(self.message)


class InvalidBookingRequestError(TicketingError):
    """Invalid booking details."""

    code = "INVALID_BOOKING_REQUEST"
    status_code = 422


# ---------------------
# Lookup errors
# ---------------------

class TicketTypeNotFoundError(TicketingError):
    """Ticket type not found for this event."""

    code = "TICKET_TYPE_NOT_FOUND"
    status_code = 404


class BookingNotFoundError(TicketingError):
    """Booking not found."""

    code = "BOOKING_NOT_FOUND"
    status_code = 404


class ConflictNotFoundError(TicketingError):
    """Reconciliation conflict not found."""

    code = "CONFLICT_NOT_FOUND"
    status_code = 404


# ---------------------
# Capacity errors
# ---------------------

class InsufficientInventoryError(TicketingError):
    """Not enough tickets available."""

    code = "INSUFFICIENT_INVENTORY"
    status_code = 409


class PerUserLimitExceededError(TicketingError):
    """Raised when a buyer would exceed the ticket type's per-user cap."""

    code = "PER_USER_LIMIT_EXCEEDED"
    status_code = 409

    def __init__(self, max_per_user: int):
        self.max_per_user = max_per_user
        super().__init__(
            f"You can only book a maximum of {max_per_user} tickets of this type"
        )


class SaleWindowClosedError(TicketingError):
    """Ticket sales are not open for this ticket type."""

    code = "SALE_WINDOW_CLOSED"
    status_code = 409


class TicketTypeUnavailableError(TicketingError):
    """Ticket type is no longer on sale."""

    code = "TICKET_TYPE_UNAVAILABLE"
    status_code = 409


class InvalidCapacityChangeError(TicketingError):
    """Capacity can only be increased."""

    code = "INVALID_CAPACITY_CHANGE"
    status_code = 409


# ---------------------
# State errors
# ---------------------

class InvalidStateTransitionError(TicketingError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    code = "INVALID_STATE_TRANSITION"
    status_code = 409

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class BookingNotPendingError(TicketingError):
    """Raised when payment is initiated for a booking that is not pending."""

    code = "BOOKING_NOT_PENDING"
    status_code = 409

    def __init__(self, booking_id: str, status: str):
        self.booking_id = booking_id
        self.status = status
        super().__init__(f"Booking {booking_id} is already {status}")


# ---------------------
# Reconciliation errors
# ---------------------

class UnknownTransactionError(TicketingError):
    """Raised when a gateway reports on a tx_ref this system never issued."""

    code = "UNKNOWN_TRANSACTION"
    status_code = 404

    def __init__(self, tx_ref: str):
        self.tx_ref = tx_ref
        super().__init__(f"No payment transaction with tx_ref {tx_ref}")


class DuplicateTransactionReferenceError(TicketingError):
    """A payment transaction with this tx_ref already exists."""

    code = "DUPLICATE_TX_REF"
    status_code = 409


class PaymentAmountMismatchError(TicketingError):
    """Payment amount does not match the booking total."""

    code = "PAYMENT_AMOUNT_MISMATCH"
    status_code = 422


# ---------------------
# Gateway errors
# ---------------------

class UnknownGatewayError(TicketingError):
    """Payment gateway not supported."""

    code = "UNKNOWN_GATEWAY"
    status_code = 404


class InvalidWebhookSignatureError(TicketingError):
    """Invalid webhook signature."""

    code = "INVALID_SIGNATURE"
    status_code = 401


class MalformedWebhookError(TicketingError):
    """Webhook payload is missing tx_ref or status."""

    code = "MALFORMED_WEBHOOK"
    status_code = 400


class GatewayConfigurationError(TicketingError):
    """Payment gateway credentials are not configured."""

    code = "GATEWAY_NOT_CONFIGURED"
    status_code = 500


class GatewayUnavailableError(TicketingError):
    """Payment gateway could not be reached."""

    code = "GATEWAY_UNAVAILABLE"
    status_code = 502


class ManualVerificationNotAllowedError(TicketingError):
    """Only manual payments can be verified by an operator."""

    code = "MANUAL_VERIFICATION_NOT_ALLOWED"
    status_code = 409
