# src/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import exists, select, update

from src.domain.state_machine import PaymentStatus
from src.infrastructure.db.models import (
    PaymentTransaction,
    PaymentWebhookEvent,
    ReconciliationConflict,
    utcnow,
)


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_tx_ref(
        self,
        tx_ref: str,
        for_update: bool = False,
    ) -> PaymentTransaction | None:

        stmt = select(PaymentTransaction).where(PaymentTransaction.tx_ref == tx_ref)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def tx_ref_exists(self, tx_ref: str) -> bool:
        stmt = select(exists().where(PaymentTransaction.tx_ref == tx_ref))
        return bool(self.db.execute(stmt).scalar())

    def list_for_booking(self, booking_id: str) -> list[PaymentTransaction]:
        stmt = (
            select(PaymentTransaction)
            .where(PaymentTransaction.booking_id == booking_id)
            .order_by(PaymentTransaction.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def has_successful_payment(self, booking_id: str) -> bool:
        stmt = select(
            exists().where(
                PaymentTransaction.booking_id == booking_id,
                PaymentTransaction.status == PaymentStatus.SUCCESS,
            )
        )
        return bool(self.db.execute(stmt).scalar())

    def create_transaction(
        self,
        booking_id: str,
        tx_ref: str,
        provider: str,
        amount: int,
        currency: str,
    ) -> PaymentTransaction:

        transaction = PaymentTransaction(
            booking_id=booking_id,
            tx_ref=tx_ref,
            provider=provider,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def compare_and_set_status(
        self,
        transaction: PaymentTransaction,
        expected: PaymentStatus,
        new_status: PaymentStatus,
        raw_payload: str | None,
    ) -> bool:
        stmt = (
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id)
            .where(PaymentTransaction.status == expected)
            .values(status=new_status, gateway_raw_payload=raw_payload)
            .execution_options(synchronize_session=False)
        )
        claimed = self.db.execute(stmt).rowcount == 1
        self.db.refresh(transaction)
        return claimed

    def store_payload(self, transaction: PaymentTransaction, raw_payload: str | None) -> None:
        transaction.gateway_raw_payload = raw_payload
        self.db.flush()

    def find_stale_pending_tx_refs(
        self,
        created_before: datetime,
        providers: list[str],
        limit: int,
    ) -> list[str]:
        stmt = (
            select(PaymentTransaction.tx_ref)
            .where(PaymentTransaction.status == PaymentStatus.PENDING)
            .where(PaymentTransaction.created_at < created_before)
            .where(PaymentTransaction.provider.in_(providers))
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    # -----------------------------
    # Conflicts
    # -----------------------------
    def add_conflict(
        self,
        transaction: PaymentTransaction,
        incoming_status: str,
        reason: str,
        payload: str | None,
    ) -> ReconciliationConflict:
        conflict = ReconciliationConflict(
            transaction_id=transaction.id,
            tx_ref=transaction.tx_ref,
            booking_id=transaction.booking_id,
            recorded_status=transaction.status.value,
            incoming_status=incoming_status,
            reason=reason,
            payload=payload,
            status="OPEN",
        )
        self.db.add(conflict)
        self.db.flush()
        return conflict

    def find_open_conflict(
        self,
        transaction_id: str,
        incoming_status: str,
    ) -> ReconciliationConflict | None:
        stmt = (
            select(ReconciliationConflict)
            .where(ReconciliationConflict.transaction_id == transaction_id)
            .where(ReconciliationConflict.incoming_status == incoming_status)
            .where(ReconciliationConflict.status == "OPEN")
        )
        return self.db.execute(stmt).scalars().first()

    def get_conflict(self, conflict_id: str) -> ReconciliationConflict | None:
        stmt = select(ReconciliationConflict).where(ReconciliationConflict.id == conflict_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_conflicts(self, status: str, limit: int) -> list[ReconciliationConflict]:
        stmt = (
            select(ReconciliationConflict)
            .where(ReconciliationConflict.status == status)
            .order_by(ReconciliationConflict.created_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def resolve_conflict(self, conflict: ReconciliationConflict, note: str) -> None:
        conflict.status = "RESOLVED"
        conflict.resolution_note = note
        conflict.resolved_at = utcnow()
        self.db.flush()

    # -----------------------------
    # Webhook audit log
    # -----------------------------
    def record_webhook(
        self,
        provider: str,
        tx_ref: str | None,
        gateway_status: str | None,
        payload_hash: str,
        outcome: str,
    ) -> PaymentWebhookEvent:
        event = PaymentWebhookEvent(
            provider=provider,
            tx_ref=tx_ref,
            gateway_status=gateway_status,
            payload_hash=payload_hash,
            outcome=outcome,
        )
        self.db.add(event)
        self.db.flush()
        return event
