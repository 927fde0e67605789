import json
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src import config
from src.application.booking_service import BookingService
from src.domain import events
from src.domain.exceptions import (
    BookingNotPendingError,
    ConflictNotFoundError,
    DuplicateTransactionReferenceError,
    GatewayConfigurationError,
    GatewayUnavailableError,
    InvalidBookingRequestError,
    ManualVerificationNotAllowedError,
    PaymentAmountMismatchError,
    TicketingError,
    UnknownGatewayError,
    UnknownTransactionError,
)
from src.domain.results import ReconciliationAction, ReconciliationOutcome
from src.domain.state_machine import BookingStatus, PaymentStateMachine, PaymentStatus
from src.infrastructure.db.models import (
    Booking,
    PaymentTransaction,
    ReconciliationConflict,
    utcnow,
)
from src.infrastructure.db.session import get_db_session
from src.infrastructure.gateways.base import PaymentGateway
from src.infrastructure.gateways.registry import (
    MANUAL_PROVIDER,
    get_gateway,
    pollable_providers,
    supported_providers,
)
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.payment_repository import PaymentRepository

logger = logging.getLogger(__name__)


# Gateway vocabularies folded onto local payment states. Anything not
# listed is ambiguous and left for review.
_GATEWAY_STATUS_MAP: dict[str, PaymentStatus] = {
    "success": PaymentStatus.SUCCESS,
    "successful": PaymentStatus.SUCCESS,
    "completed": PaymentStatus.SUCCESS,
    "captured": PaymentStatus.SUCCESS,
    "paid": PaymentStatus.SUCCESS,
    "charge.completed": PaymentStatus.SUCCESS,
    "charge.success": PaymentStatus.SUCCESS,
    "failed": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "charge.failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "charge.cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "charge.refunded": PaymentStatus.REFUNDED,
}


def normalize_gateway_status(gateway_status: str | None) -> PaymentStatus | None:
    if not gateway_status:
        return None
    return _GATEWAY_STATUS_MAP.get(str(gateway_status).strip().lower())


def _serialize_payload(raw_payload: Any) -> str | None:
    if raw_payload is None or isinstance(raw_payload, str):
        return raw_payload
    return json.dumps(raw_payload, sort_keys=True, default=str)


class PaymentReconciler:
    """
    Applies gateway reports to local payment and booking state.

    Keyed on ``tx_ref``: the same report may arrive any number of times,
    from webhooks, operator verification or polling, and is applied once.
    A report that contradicts an already settled transaction is never
    applied; it is recorded as a ReconciliationConflict instead.
    """

    def __init__(
        self,
        db: Session,
        gateway_resolver: Callable[[str], PaymentGateway] = get_gateway,
    ):
        self.db = db
        self.payment_repository = PaymentRepository(db)
        self.booking_repository = BookingRepository(db)
        self.booking_service = BookingService(db)
        self.outbox = self.booking_service.outbox
        self._resolve_gateway = gateway_resolver

    # -----------------------------
    # Initiation
    # -----------------------------
    def record_payment_initiated(
        self,
        booking_id: str,
        tx_ref: str,
        amount: int | None,
        currency: str | None,
        provider: str,
        user_id: str | None = None,
    ) -> PaymentTransaction:
        if not tx_ref:
            raise InvalidBookingRequestError("txRef is required")

        provider = (provider or "").lower()
        if provider not in supported_providers():
            raise UnknownGatewayError(f"Payment gateway '{provider}' not supported")

        booking = self.booking_service.get_booking(booking_id, user_id=user_id)
        if booking.status is not BookingStatus.PENDING:
            raise BookingNotPendingError(booking.id, booking.status.value)

        amount = booking.total_price if amount is None else amount
        currency = (currency or booking.currency).upper()
        if amount != booking.total_price or currency != booking.currency:
            raise PaymentAmountMismatchError(
                f"Expected {booking.total_price} {booking.currency}, got {amount} {currency}"
            )

        if self.payment_repository.tx_ref_exists(tx_ref):
            raise DuplicateTransactionReferenceError()

        try:
            transaction = self.payment_repository.create_transaction(
                booking_id=booking.id,
                tx_ref=tx_ref,
                provider=provider,
                amount=amount,
                currency=currency,
            )
        except IntegrityError as exc:
            # Lost an insert race on the unique tx_ref.
            raise DuplicateTransactionReferenceError() from exc

        logger.info(
            "Payment initiated. booking_id=%s tx_ref=%s provider=%s amount=%s %s",
            booking.id,
            tx_ref,
            provider,
            amount,
            currency,
        )
        return transaction

    # -----------------------------
    # Reads
    # -----------------------------
    def get_transaction(self, tx_ref: str) -> PaymentTransaction:
        transaction = self.payment_repository.get_by_tx_ref(tx_ref)
        if transaction is None:
            raise UnknownTransactionError(tx_ref)
        return transaction

    def list_booking_transactions(
        self,
        booking_id: str,
        user_id: str | None = None,
    ) -> list[PaymentTransaction]:
        booking = self.booking_service.get_booking(booking_id, user_id=user_id)
        return self.payment_repository.list_for_booking(booking.id)

    # -----------------------------
    # Gateway reports
    # -----------------------------
    def handle_webhook(
        self,
        tx_ref: str,
        gateway_status: str,
        raw_payload: Any = None,
        provider: str | None = None,
    ) -> ReconciliationOutcome:
        """
        Apply one gateway report. When ``provider`` is given, only a
        transaction initiated with that provider may be touched; a report
        from any other channel is treated as an unknown transaction.
        """
        transaction = self.payment_repository.get_by_tx_ref(tx_ref, for_update=True)
        if transaction is None:
            logger.warning(
                "Gateway report for unknown transaction. tx_ref=%s status=%s",
                tx_ref,
                gateway_status,
            )
            raise UnknownTransactionError(tx_ref)

        if provider is not None and provider != transaction.provider:
            logger.warning(
                "Gateway report from the wrong provider ignored. tx_ref=%s provider=%s expected=%s",
                tx_ref,
                provider,
                transaction.provider,
            )
            raise UnknownTransactionError(tx_ref)

        booking = self.booking_repository.get_by_id(transaction.booking_id)
        incoming = normalize_gateway_status(gateway_status)
        payload = _serialize_payload(raw_payload)

        if PaymentStateMachine.is_settled(transaction.status):
            return self._handle_settled(transaction, booking, incoming, gateway_status, payload)

        if incoming is None:
            self.payment_repository.store_payload(transaction, payload)
            logger.warning(
                "Ambiguous gateway status, left pending for review. tx_ref=%s status=%s",
                tx_ref,
                gateway_status,
            )
            return self._outcome(
                ReconciliationAction.DEFERRED,
                transaction,
                booking,
                gateway_status=gateway_status,
            )

        if incoming is PaymentStatus.REFUNDED:
            return self._record_conflict(
                transaction,
                booking,
                incoming.value,
                "refund reported for a payment that never succeeded",
                payload,
            )

        if incoming is PaymentStatus.SUCCESS:
            return self._apply_success(transaction, booking, payload)

        return self._apply_failure(transaction, booking, incoming, payload)

    def verify_transaction(self, tx_ref: str) -> ReconciliationOutcome:
        """Ask the provider for the authoritative status and apply it."""

        transaction = self.payment_repository.get_by_tx_ref(tx_ref)
        if transaction is None:
            raise UnknownTransactionError(tx_ref)

        if transaction.provider == MANUAL_PROVIDER:
            booking = self.booking_repository.get_by_id(transaction.booking_id)
            return self._outcome(
                ReconciliationAction.DEFERRED,
                transaction,
                booking,
                reason="manual payments are confirmed by an operator",
            )

        notification = self._resolve_gateway(transaction.provider).fetch_status(tx_ref)
        logger.info(
            "Gateway status fetched. tx_ref=%s provider=%s status=%s",
            tx_ref,
            transaction.provider,
            notification.status,
        )
        return self.handle_webhook(
            tx_ref,
            notification.status,
            notification.payload,
            provider=transaction.provider,
        )

    def verify_manual_payment(
        self,
        tx_ref: str,
        verification_data: dict[str, Any],
        actor: str,
    ) -> ReconciliationOutcome:
        transaction = self.payment_repository.get_by_tx_ref(tx_ref)
        if transaction is None:
            raise UnknownTransactionError(tx_ref)
        if transaction.provider != MANUAL_PROVIDER:
            raise ManualVerificationNotAllowedError()

        verification_data = dict(verification_data or {})
        status = verification_data.pop("status", None) or "success"
        payload = {
            "verified_by": actor,
            "verified_at": utcnow().isoformat(),
            "verification": verification_data,
        }
        logger.info(
            "Manual payment verification. tx_ref=%s status=%s actor=%s",
            tx_ref,
            status,
            actor,
        )
        return self.handle_webhook(tx_ref, status, payload, provider=MANUAL_PROVIDER)

    # -----------------------------
    # Conflicts
    # -----------------------------
    def list_conflicts(self, status: str = "OPEN", limit: int = 50) -> list[ReconciliationConflict]:
        limit = max(1, min(limit, 200))
        return self.payment_repository.list_conflicts(status.upper(), limit)

    def resolve_conflict(self, conflict_id: str, note: str) -> ReconciliationConflict:
        conflict = self.payment_repository.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError()

        if conflict.status != "RESOLVED":
            self.payment_repository.resolve_conflict(conflict, note)
            logger.info("Reconciliation conflict resolved. conflict_id=%s", conflict.id)
        return conflict

    # -----------------------------
    # Internals
    # -----------------------------
    def _apply_success(
        self,
        transaction: PaymentTransaction,
        booking: Booking,
        payload: str | None,
    ) -> ReconciliationOutcome:
        if booking.status is not BookingStatus.PENDING:
            # Paid after expiry, after a cancel, or on top of another
            # successful transaction. Money was taken for nothing.
            outcome = self._record_conflict(
                transaction,
                booking,
                PaymentStatus.SUCCESS.value,
                f"payment succeeded for a {booking.status.value} booking",
                payload,
            )
            self.booking_service.request_refund(
                booking,
                transaction.tx_ref,
                reason=f"payment succeeded for a {booking.status.value} booking",
            )
            return outcome

        if not self._set_status(
            transaction, PaymentStatus.PENDING, PaymentStatus.SUCCESS, payload
        ):
            return self._handle_settled(
                transaction, booking, PaymentStatus.SUCCESS, PaymentStatus.SUCCESS.value, payload
            )

        self.booking_service.confirm(booking)
        logger.info(
            "Payment applied. tx_ref=%s booking_id=%s -> %s",
            transaction.tx_ref,
            booking.id,
            booking.status.value,
        )
        return self._outcome(ReconciliationAction.APPLIED, transaction, booking)

    def _apply_failure(
        self,
        transaction: PaymentTransaction,
        booking: Booking,
        incoming: PaymentStatus,
        payload: str | None,
    ) -> ReconciliationOutcome:
        if not self._set_status(
            transaction, PaymentStatus.PENDING, incoming, payload
        ):
            return self._handle_settled(transaction, booking, incoming, incoming.value, payload)

        if booking.status is BookingStatus.PENDING:
            self.booking_service.cancel(
                booking,
                actor=events.SYSTEM_PAYMENT_ACTOR,
                reason=f"payment {incoming.value}",
            )

        logger.info(
            "Payment applied. tx_ref=%s status=%s booking_id=%s booking_status=%s",
            transaction.tx_ref,
            incoming.value,
            booking.id,
            booking.status.value,
        )
        return self._outcome(ReconciliationAction.APPLIED, transaction, booking)

    def _handle_settled(
        self,
        transaction: PaymentTransaction,
        booking: Booking,
        incoming: PaymentStatus | None,
        gateway_status: str,
        payload: str | None,
    ) -> ReconciliationOutcome:
        if incoming is transaction.status:
            logger.info(
                "Duplicate gateway report ignored. tx_ref=%s status=%s",
                transaction.tx_ref,
                incoming.value,
            )
            return self._outcome(ReconciliationAction.REPLAYED, transaction, booking)

        if incoming is None:
            logger.warning(
                "Ambiguous gateway status for settled transaction ignored. tx_ref=%s recorded=%s status=%s",
                transaction.tx_ref,
                transaction.status.value,
                gateway_status,
            )
            return self._outcome(
                ReconciliationAction.DEFERRED,
                transaction,
                booking,
                gateway_status=gateway_status,
            )

        if (
            transaction.status is PaymentStatus.SUCCESS
            and incoming is PaymentStatus.REFUNDED
            and booking.status is BookingStatus.CANCELLED
        ):
            if self._set_status(
                transaction, PaymentStatus.SUCCESS, PaymentStatus.REFUNDED, payload
            ):
                logger.info("Refund recorded. tx_ref=%s booking_id=%s", transaction.tx_ref, booking.id)
                return self._outcome(ReconciliationAction.APPLIED, transaction, booking)
            return self._outcome(ReconciliationAction.REPLAYED, transaction, booking)

        return self._record_conflict(
            transaction,
            booking,
            incoming.value,
            f"gateway reported {incoming.value} for a {transaction.status.value} transaction",
            payload,
        )

    def _set_status(
        self,
        transaction: PaymentTransaction,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        payload: str | None,
    ) -> bool:
        PaymentStateMachine.validate_transition(expected, new_status)
        return self.payment_repository.compare_and_set_status(
            transaction, expected, new_status, payload
        )

    def _record_conflict(
        self,
        transaction: PaymentTransaction,
        booking: Booking,
        incoming_status: str,
        reason: str,
        payload: str | None,
    ) -> ReconciliationOutcome:
        conflict = self.payment_repository.find_open_conflict(transaction.id, incoming_status)
        if conflict is None:
            conflict = self.payment_repository.add_conflict(
                transaction,
                incoming_status=incoming_status,
                reason=reason,
                payload=payload,
            )
            self.outbox.add(
                aggregate_type="payment",
                aggregate_id=transaction.id,
                event_type=events.PAYMENT_CONFLICT_DETECTED,
                payload={
                    "conflict_id": conflict.id,
                    "tx_ref": transaction.tx_ref,
                    "booking_id": booking.id,
                    "recorded_status": conflict.recorded_status,
                    "incoming_status": incoming_status,
                    "booking_status": booking.status.value,
                    "reason": reason,
                },
                dedupe_key=f"conflict:{conflict.id}",
            )

        logger.error(
            "Reconciliation conflict. tx_ref=%s recorded=%s incoming=%s booking_status=%s conflict_id=%s",
            transaction.tx_ref,
            transaction.status.value,
            incoming_status,
            booking.status.value,
            conflict.id,
        )
        return self._outcome(
            ReconciliationAction.CONFLICT,
            transaction,
            booking,
            conflict_id=conflict.id,
            reason=reason,
        )

    @staticmethod
    def _outcome(
        action: ReconciliationAction,
        transaction: PaymentTransaction,
        booking: Booking,
        conflict_id: str | None = None,
        **details,
    ) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            action=action,
            tx_ref=transaction.tx_ref,
            transaction_status=transaction.status,
            booking_id=booking.id,
            booking_status=booking.status,
            conflict_id=conflict_id,
            details=details,
        )


def reconcile_stale(
    older_than: timedelta | None = None,
    limit: int | None = None,
    session_factory=get_db_session,
    gateway_resolver: Callable[[str], PaymentGateway] = get_gateway,
) -> dict[str, int]:
    """
    Poll providers for pending transactions nobody has reported on.

    Each transaction is verified in its own unit of work so one failing
    gateway call does not roll back the rest of the batch.
    """

    if older_than is None:
        older_than = timedelta(minutes=config.RECONCILE_MIN_AGE_MINUTES)
    limit = limit or config.RECONCILE_BATCH_SIZE

    with session_factory() as db:
        tx_refs = PaymentRepository(db).find_stale_pending_tx_refs(
            created_before=utcnow() - older_than,
            providers=pollable_providers(),
            limit=limit,
        )

    counts: Counter = Counter()
    for tx_ref in tx_refs:
        try:
            with session_factory() as db:
                outcome = PaymentReconciler(db, gateway_resolver).verify_transaction(tx_ref)
            counts[outcome.action.value] += 1
        except (GatewayUnavailableError, GatewayConfigurationError) as exc:
            logger.warning("Stale payment check skipped. tx_ref=%s error=%s", tx_ref, exc)
            counts["SKIPPED"] += 1
        except TicketingError as exc:
            logger.error(
                "Stale payment check failed. tx_ref=%s code=%s error=%s",
                tx_ref,
                exc.code,
                exc.message,
            )
            counts["FAILED"] += 1

    logger.info("Stale payment reconciliation finished. checked=%s results=%s", len(tx_refs), dict(counts))
    return dict(counts)
