# src/domain/results.py

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.domain.state_machine import BookingStatus, PaymentStatus


@dataclass(frozen=True)
class ReservationResult:
    """Capacity claimed by InventoryLedger.reserve for one booking."""

    ticket_type_id: str
    event_id: str
    quantity: int
    unit_price: int
    total_price: int
    currency: str
    sold_after: int


class ReconciliationAction(str, Enum):
    APPLIED = "APPLIED"
    REPLAYED = "REPLAYED"
    DEFERRED = "DEFERRED"
    CONFLICT = "CONFLICT"


@dataclass
class ReconciliationOutcome:
    """
    What the reconciler did with one gateway report.

    APPLIED   - transaction status changed and the booking followed it.
    REPLAYED  - duplicate of an already recorded outcome; nothing changed.
    DEFERRED  - gateway status was ambiguous; left pending for review.
    CONFLICT  - contradicted recorded state; a conflict row was opened.
    """

    action: ReconciliationAction
    tx_ref: str
    transaction_status: PaymentStatus
    booking_id: str
    booking_status: BookingStatus
    conflict_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
