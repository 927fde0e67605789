import hashlib
import json
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from src import config
from src.api.schemas.schemas import (
    ActiveUpdateRequest,
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    CapacityUpdateRequest,
    ConflictResolveRequest,
    ConflictResponse,
    InventoryResponse,
    ManualPaymentVerifyRequest,
    OutboxEventResponse,
    PaymentInitiateRequest,
    PaymentTransactionResponse,
    ReconciliationOutcomeResponse,
    WebhookAckResponse,
)
from src.application.booking_service import BookingService
from src.application.payment_reconciler import PaymentReconciler
from src.domain.exceptions import MalformedWebhookError, UnknownTransactionError
from src.domain.results import ReconciliationOutcome
from src.infrastructure.db.models import (
    Booking,
    OutboxEvent,
    PaymentTransaction,
    ReconciliationConflict,
    as_utc,
)
from src.infrastructure.db.session import SessionLocal
from src.infrastructure.gateways.registry import get_gateway
from src.infrastructure.repositories.inventory_ledger import InventoryLedger
from src.infrastructure.repositories.outbox_repository import OutboxRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository


router = APIRouter()
logger = logging.getLogger(__name__)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_gateway_resolver():
    return get_gateway


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # Identity is established upstream; the gateway forwards the caller id.
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required",
        )
    return x_user_id


async def get_raw_body(request: Request) -> bytes:
    return await request.body()


def _iso(value) -> str | None:
    return as_utc(value).isoformat() if value is not None else None


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        booking_reference=booking.booking_reference,
        user_id=booking.user_id,
        event_id=booking.event_id,
        ticket_type_id=booking.ticket_type_id,
        quantity=booking.quantity,
        total_price=booking.total_price,
        currency=booking.currency,
        status=booking.status.value,
        check_in_time=_iso(booking.check_in_time),
        cancelled_by=booking.cancelled_by,
        cancellation_reason=booking.cancellation_reason,
        created_at=_iso(booking.created_at),
        updated_at=_iso(booking.updated_at),
    )


def _transaction_response(transaction: PaymentTransaction) -> PaymentTransactionResponse:
    return PaymentTransactionResponse(
        id=transaction.id,
        tx_ref=transaction.tx_ref,
        booking_id=transaction.booking_id,
        provider=transaction.provider,
        amount=transaction.amount,
        currency=transaction.currency,
        status=transaction.status.value,
        created_at=_iso(transaction.created_at),
        updated_at=_iso(transaction.updated_at),
    )


def _outcome_response(outcome: ReconciliationOutcome) -> ReconciliationOutcomeResponse:
    return ReconciliationOutcomeResponse(
        action=outcome.action.value,
        tx_ref=outcome.tx_ref,
        transaction_status=outcome.transaction_status.value,
        booking_id=outcome.booking_id,
        booking_status=outcome.booking_status.value,
        conflict_id=outcome.conflict_id,
        details=outcome.details,
    )


def _conflict_response(conflict: ReconciliationConflict) -> ConflictResponse:
    return ConflictResponse(
        id=conflict.id,
        tx_ref=conflict.tx_ref,
        booking_id=conflict.booking_id,
        recorded_status=conflict.recorded_status,
        incoming_status=conflict.incoming_status,
        reason=conflict.reason,
        status=conflict.status,
        resolution_note=conflict.resolution_note,
        created_at=_iso(conflict.created_at),
        resolved_at=_iso(conflict.resolved_at),
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        payload=json.loads(item.payload),
        status=item.status,
        attempts=item.attempts,
        created_at=_iso(item.created_at),
        published_at=_iso(item.published_at),
    )


@router.get("/health")
def health():
    return {"message": "Ticketing core is running"}


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingCreateRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    booking = BookingService(db).create_booking(
        event_id=request.event_id,
        ticket_type_id=request.ticket_type_id,
        user_id=user_id,
        quantity=request.quantity,
    )
    return _booking_response(booking)


@router.get("/bookings", response_model=list[BookingResponse])
def list_my_bookings(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return [_booking_response(booking) for booking in BookingService(db).list_user_bookings(user_id)]


@router.get("/bookings/reference/{reference}", response_model=BookingResponse)
def get_booking_by_reference(reference: str, db: Session = Depends(get_db)):
    return _booking_response(BookingService(db).get_by_reference(reference.upper()))


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return _booking_response(BookingService(db).get_booking(booking_id, user_id=user_id))


@router.get("/bookings/{booking_id}/payments", response_model=list[PaymentTransactionResponse])
def list_booking_payments(
    booking_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    transactions = PaymentReconciler(db).list_booking_transactions(booking_id, user_id=user_id)
    return [_transaction_response(transaction) for transaction in transactions]


@router.put("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: BookingCancelRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    reason = (request.reason if request else None) or "cancelled by user"
    booking = BookingService(db).cancel_booking(
        booking_id,
        actor=user_id,
        user_id=user_id,
        reason=reason,
    )
    return _booking_response(booking)


# -----------------------------
# Organizer
# -----------------------------
@router.get("/organizer/events/{event_id}/bookings", response_model=list[BookingResponse])
def list_event_bookings(
    event_id: str,
    _: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return [_booking_response(booking) for booking in BookingService(db).list_event_bookings(event_id)]


@router.put("/organizer/bookings/{booking_id}/check-in", response_model=BookingResponse)
def check_in_booking(
    booking_id: str,
    _: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return _booking_response(BookingService(db).check_in(booking_id))


# -----------------------------
# Payments
# -----------------------------
@router.post(
    "/payments/initiate",
    response_model=PaymentTransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
def initiate_payment(
    request: PaymentInitiateRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    transaction = PaymentReconciler(db).record_payment_initiated(
        booking_id=request.booking_id,
        tx_ref=request.tx_ref,
        amount=request.amount,
        currency=request.currency,
        provider=request.provider,
        user_id=user_id,
    )
    return _transaction_response(transaction)


@router.post("/payments/manual/verify", response_model=ReconciliationOutcomeResponse)
def verify_manual_payment(
    request: ManualPaymentVerifyRequest,
    actor: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    outcome = PaymentReconciler(db).verify_manual_payment(
        request.tx_ref,
        {**request.verification_data, "status": request.status},
        actor=actor,
    )
    return _outcome_response(outcome)


@router.get("/payments/conflicts", response_model=list[ConflictResponse])
def list_conflicts(
    status_filter: str = "OPEN",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    conflicts = PaymentReconciler(db).list_conflicts(status=status_filter, limit=limit)
    return [_conflict_response(conflict) for conflict in conflicts]


@router.post("/payments/conflicts/{conflict_id}/resolve", response_model=ConflictResponse)
def resolve_conflict(
    conflict_id: str,
    request: ConflictResolveRequest,
    actor: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    conflict = PaymentReconciler(db).resolve_conflict(conflict_id, f"{actor}: {request.note}")
    return _conflict_response(conflict)


@router.get("/payments/{tx_ref}", response_model=PaymentTransactionResponse)
def get_payment_transaction(
    tx_ref: str,
    _: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    return _transaction_response(PaymentReconciler(db).get_transaction(tx_ref))


@router.post("/payments/{gateway}/webhook", response_model=WebhookAckResponse)
def payment_webhook(
    gateway: str,
    request: Request,
    raw_body: bytes = Depends(get_raw_body),
    gateway_resolver=Depends(get_gateway_resolver),
    db: Session = Depends(get_db),
):
    adapter = gateway_resolver(gateway)
    if config.webhook_verification_enabled():
        adapter.verify_signature(raw_body, request.headers)

    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise MalformedWebhookError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedWebhookError("Webhook body must be a JSON object")

    notification = adapter.parse_webhook(payload)
    payload_hash = hashlib.sha256(raw_body).hexdigest()
    payment_repository = PaymentRepository(db)

    try:
        outcome = PaymentReconciler(db, gateway_resolver).handle_webhook(
            notification.tx_ref,
            notification.status,
            payload,
            provider=adapter.name,
        )
    except UnknownTransactionError:
        # Acknowledged so the gateway stops retrying; kept for re-checking.
        payment_repository.record_webhook(
            provider=adapter.name,
            tx_ref=notification.tx_ref,
            gateway_status=notification.status,
            payload_hash=payload_hash,
            outcome=UnknownTransactionError.code,
        )
        return WebhookAckResponse(
            received=True,
            outcome=UnknownTransactionError.code,
            tx_ref=notification.tx_ref,
        )

    payment_repository.record_webhook(
        provider=adapter.name,
        tx_ref=notification.tx_ref,
        gateway_status=notification.status,
        payload_hash=payload_hash,
        outcome=outcome.action.value,
    )
    return WebhookAckResponse(
        received=True,
        outcome=outcome.action.value,
        tx_ref=outcome.tx_ref,
        conflict_id=outcome.conflict_id,
    )


@router.post("/payments/{tx_ref}/verify", response_model=ReconciliationOutcomeResponse)
def verify_payment(
    tx_ref: str,
    gateway_resolver=Depends(get_gateway_resolver),
    db: Session = Depends(get_db),
):
    return _outcome_response(PaymentReconciler(db, gateway_resolver).verify_transaction(tx_ref))


# -----------------------------
# Inventory
# -----------------------------
@router.get("/ticket-types/{ticket_type_id}/inventory", response_model=InventoryResponse)
def get_inventory(ticket_type_id: str, db: Session = Depends(get_db)):
    return InventoryResponse(**InventoryLedger(db).stats(ticket_type_id))


@router.put("/admin/ticket-types/{ticket_type_id}/capacity", response_model=InventoryResponse)
def increase_capacity(
    ticket_type_id: str,
    request: CapacityUpdateRequest,
    actor: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    ledger = InventoryLedger(db)
    ledger.increase_capacity(ticket_type_id, request.quantity)
    logger.info("Capacity change requested. ticket_type_id=%s actor=%s", ticket_type_id, actor)
    return InventoryResponse(**ledger.stats(ticket_type_id))


@router.put("/admin/ticket-types/{ticket_type_id}/active", response_model=InventoryResponse)
def set_ticket_type_active(
    ticket_type_id: str,
    request: ActiveUpdateRequest,
    actor: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    ledger = InventoryLedger(db)
    ledger.set_active(ticket_type_id, request.is_active)
    logger.info(
        "Ticket type availability changed. ticket_type_id=%s active=%s actor=%s",
        ticket_type_id,
        request.is_active,
        actor,
    )
    return InventoryResponse(**ledger.stats(ticket_type_id))


# -----------------------------
# Outbox
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    return [_outbox_response(item) for item in OutboxRepository(db).list_by_status(status_filter, limit)]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    outbox = OutboxRepository(db)
    item = outbox.get(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )
    return _outbox_response(outbox.mark_published(item))
