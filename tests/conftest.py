import os
from datetime import datetime, timedelta, timezone

# Keep the module-level engine away from a real Postgres during tests.
os.environ.setdefault("DATABASE_URL", "sqlite:///./.pytest_bootstrap.db")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from src.api.routes.routes import get_db, get_dispatcher, get_session_factory
from src.application.catalog_service import CatalogService, SlotSpec
from src.application.side_effects import CompositeDispatcher, OutboxDispatcher, SideEffectDispatcher
from src.domain.value_objects import Payer, SlotRef
from src.infrastructure.db.models import Base
from src.infrastructure.db.session import build_engine
from src.main import app


SLOT_DATE = "2026-03-10"
SLOT_TIME = "17:00"


class FakeClock:
    """Deterministic clock; every call moves time forward by ``step``."""

    def __init__(self, start: datetime, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingDispatcher(SideEffectDispatcher):

    def __init__(self):
        self.calls: list[tuple] = []

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def notify_booking_created(self, booking):
        self.calls.append(("booking_created", booking.id))

    def notify_booking_cancelled(self, booking):
        self.calls.append(("booking_cancelled", booking.id))

    def notify_capacity_changed(self, slot_ref, booked_count):
        self.calls.append(("capacity_changed", slot_ref, booked_count))

    def notify_waitlist_offer(self, entry):
        self.calls.append(("waitlist_offer", entry.id))

    def notify_payment_reminder(self, booking, splits):
        self.calls.append(("payment_reminder", booking.id, [s.participant_email for s in splits]))

    def notify_booking_reminder(self, booking):
        self.calls.append(("booking_reminder", booking.id))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def frozen_clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc), step=timedelta(0))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def make_slot(db):
    """Create an experience with one slot and return its SlotRef."""

    def _make(capacity: int = 5, price: str = "100.00", date: str = SLOT_DATE, time: str = SLOT_TIME) -> SlotRef:
        experience = CatalogService(db).create_experience(
            title="Sunset Kayak Tour",
            price=price,
            slots=[SlotSpec(date=date, time=time, capacity=capacity)],
        )
        return SlotRef(experience.id, date, time)

    return _make


@pytest.fixture
def payer():
    return Payer("user-1", "Ada Lovelace", "ada@example.com")


@pytest.fixture
def client(session_factory, dispatcher):
    def override_get_db():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_dispatcher] = lambda: CompositeDispatcher(
        [dispatcher, OutboxDispatcher(session_factory)]
    )
    yield TestClient(app)
    app.dependency_overrides.clear()
