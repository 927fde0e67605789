from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """JSON bodies are camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorResponse(CamelModel):
    code: str
    message: str


# -----------------------------
# Bookings
# -----------------------------
class BookingCreateRequest(CamelModel):
    event_id: str = Field(min_length=1)
    ticket_type_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class BookingCancelRequest(CamelModel):
    reason: str | None = Field(default=None, max_length=255)


class BookingResponse(CamelModel):
    id: str
    booking_reference: str
    user_id: str
    event_id: str
    ticket_type_id: str
    quantity: int
    total_price: int
    currency: str
    status: str
    check_in_time: str | None = None
    cancelled_by: str | None = None
    cancellation_reason: str | None = None
    created_at: str
    updated_at: str


# -----------------------------
# Payments
# -----------------------------
class PaymentInitiateRequest(CamelModel):
    booking_id: str
    tx_ref: str = Field(min_length=1, max_length=128)
    provider: str
    amount: int | None = Field(default=None, ge=0)
    currency: str | None = None


class PaymentTransactionResponse(CamelModel):
    id: str
    tx_ref: str
    booking_id: str
    provider: str
    amount: int
    currency: str
    status: str
    created_at: str
    updated_at: str


class ManualPaymentVerifyRequest(CamelModel):
    tx_ref: str
    status: Literal["success", "failed"] = "success"
    verification_data: dict[str, Any] = Field(default_factory=dict)


class ReconciliationOutcomeResponse(CamelModel):
    action: str
    tx_ref: str
    transaction_status: str
    booking_id: str
    booking_status: str
    conflict_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class WebhookAckResponse(CamelModel):
    received: bool
    outcome: str
    tx_ref: str | None = None
    conflict_id: str | None = None


class ConflictResponse(CamelModel):
    id: str
    tx_ref: str
    booking_id: str
    recorded_status: str
    incoming_status: str
    reason: str
    status: str
    resolution_note: str | None = None
    created_at: str
    resolved_at: str | None = None


class ConflictResolveRequest(CamelModel):
    note: str = Field(min_length=1)


# -----------------------------
# Inventory
# -----------------------------
class InventoryResponse(CamelModel):
    ticket_type_id: str
    event_id: str
    quantity: int
    sold: int
    available: int
    is_active: bool


class CapacityUpdateRequest(CamelModel):
    quantity: int = Field(ge=0)


class ActiveUpdateRequest(CamelModel):
    is_active: bool


# -----------------------------
# Outbox
# -----------------------------
class OutboxEventResponse(CamelModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    created_at: str
    published_at: str | None = None
