# src/infrastructure/repositories/outbox_repository.py

import json

from sqlalchemy.orm import Session
from sqlalchemy import select

from src.infrastructure.db.models import OutboxEvent, utcnow


class OutboxRepository:
    """
    Transactional outbox. Events are written in the same unit of work as the
    state change they describe; collaborators poll and acknowledge them.
    """

    def __init__(self, db: Session):
        self.db = db

    def add(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        existing = self.db.execute(
            select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key)
        ).scalar_one_or_none()
        if existing:
            return

        self.db.add(
            OutboxEvent(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=json.dumps(payload, sort_keys=True, default=str),
                dedupe_key=dedupe_key,
                status="PENDING",
                attempts=0,
            )
        )
        self.db.flush()

    def list_by_status(self, status: str, limit: int) -> list[OutboxEvent]:
        safe_limit = max(1, min(limit, 200))
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at)
            .limit(safe_limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_for_aggregate(self, aggregate_id: str) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.aggregate_id == aggregate_id)
            .order_by(OutboxEvent.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def get(self, event_id: str) -> OutboxEvent | None:
        return self.db.execute(
            select(OutboxEvent).where(OutboxEvent.id == event_id)
        ).scalar_one_or_none()

    def mark_published(self, item: OutboxEvent) -> OutboxEvent:
        item.status = "PUBLISHED"
        item.published_at = utcnow()
        item.attempts += 1
        self.db.flush()
        return item
