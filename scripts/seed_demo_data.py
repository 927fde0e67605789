from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.infrastructure.db.models import Base, TicketType
from src.infrastructure.db.session import SessionLocal, engine


def _dt(days_from_now: int, hour: int = 0) -> datetime:
    now = datetime.now(timezone.utc)
    target = now + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=0, second=0, microsecond=0)


TICKET_TYPE_DEFS = [
    {
        "event_id": "addis-jazz-night",
        "name": "Regular",
        "price": 50000,
        "quantity": 400,
        "max_per_user": 6,
    },
    {
        "event_id": "addis-jazz-night",
        "name": "VIP",
        "price": 150000,
        "quantity": 60,
        "max_per_user": 2,
    },
    {
        "event_id": "tech-meetup-october",
        "name": "Community",
        "price": 0,
        "is_free": True,
        "quantity": 120,
        "max_per_user": 1,
        "available_to": _dt(days_from_now=14),
    },
    {
        "event_id": "timket-festival",
        "name": "Early Bird",
        "price": 30000,
        "quantity": 100,
        "max_per_user": 4,
        "available_from": _dt(days_from_now=-1),
        "available_to": _dt(days_from_now=7),
    },
]


def seed_ticket_types(db) -> None:
    for item in TICKET_TYPE_DEFS:
        existing = db.execute(
            select(TicketType)
            .where(TicketType.event_id == item["event_id"])
            .where(TicketType.name == item["name"])
        ).scalar_one_or_none()
        if existing:
            # Never shrink capacity under existing bookings.
            existing.quantity = max(existing.quantity, item["quantity"])
            existing.price = item["price"]
            existing.is_free = item.get("is_free", False)
            existing.max_per_user = item.get("max_per_user")
            existing.is_active = True
            continue

        db.add(
            TicketType(
                event_id=item["event_id"],
                name=item["name"],
                price=item["price"],
                is_free=item.get("is_free", False),
                quantity=item["quantity"],
                sold=0,
                max_per_user=item.get("max_per_user"),
                available_from=item.get("available_from"),
                available_to=item.get("available_to"),
            )
        )


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_ticket_types(db)
        db.commit()
        print(f"Seed complete: {len(TICKET_TYPE_DEFS)} ticket types across 3 events.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
