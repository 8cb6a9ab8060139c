from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from src.application.catalog_service import CatalogService, SlotSpec
from src.infrastructure.db.models import Base, Experience
from src.infrastructure.db.session import SessionLocal, engine, wait_for_database


def _day(days_from_now: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days_from_now)).strftime("%Y-%m-%d")


EXPERIENCE_DEFS = [
    {
        "title": "Sunset Kayak Tour",
        "price": "65.00",
        "location": "Harbour Pier 3",
        "slots": [
            SlotSpec(date=_day(2), time="17:00", capacity=12),
            SlotSpec(date=_day(3), time="17:00", capacity=12),
            SlotSpec(date=_day(7), time="17:00", capacity=12, price_override="79.00"),
        ],
    },
    {
        "title": "Pasta Making Workshop",
        "price": "90.00",
        "location": "Old Town Kitchen Studio",
        "slots": [
            SlotSpec(date=_day(1), time="11:00", capacity=8),
            SlotSpec(date=_day(1), time="18:30", capacity=8),
        ],
    },
    {
        "title": "Private Wine Tasting",
        "price": "120.00",
        "location": "Cellar 19",
        "slots": [
            # Tiny slot, useful for trying the waitlist.
            SlotSpec(date=_day(4), time="20:00", capacity=2),
        ],
    },
]


def seed_experiences(db) -> None:
    service = CatalogService(db)
    for item in EXPERIENCE_DEFS:
        existing = db.execute(
            select(Experience).where(Experience.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            continue
        service.create_experience(
            title=item["title"],
            price=item["price"],
            location=item["location"],
            slots=item["slots"],
        )


def main() -> None:
    wait_for_database()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_experiences(db)
        print("Seeded demo experiences and slots.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
