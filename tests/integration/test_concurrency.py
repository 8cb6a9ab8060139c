import threading
from concurrent.futures import ThreadPoolExecutor

from src.application.booking_service import BookingService
from src.application.waitlist_service import WaitlistService
from src.domain.exceptions import (
    AlreadyCancelledError,
    AlreadyWaitingError,
    ConcurrentConflictError,
    InsufficientCapacityError,
)
from src.domain.value_objects import Payer
from src.infrastructure.db.models import Booking, WaitlistEntry
from src.infrastructure.repositories.slot_repository import SlotRepository


WORKERS = 10


def _run_together(count: int, action) -> list[str]:
    """Start ``count`` callers at the same moment; collect one outcome each."""
    barrier = threading.Barrier(count)

    def worker(index: int) -> str:
        barrier.wait()
        return action(index)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(worker, range(count)))


def test_last_seats_are_never_oversold(db, session_factory, make_slot):
    ref = make_slot(capacity=5)

    def book(index: int) -> str:
        session = session_factory()
        try:
            BookingService(session).place_booking(
                ref,
                1,
                Payer(f"user-{index}", f"User {index}", f"user{index}@example.com"),
            )
            return "booked"
        except (ConcurrentConflictError, InsufficientCapacityError):
            return "rejected"
        finally:
            session.close()

    outcomes = _run_together(WORKERS, book)

    assert outcomes.count("booked") == 5
    assert outcomes.count("rejected") == 5
    slot = SlotRepository(db).get(ref)
    db.refresh(slot)
    assert slot.booked_count == 5
    assert db.query(Booking).count() == 5


def test_concurrent_cancels_release_once(db, session_factory, make_slot, payer):
    ref = make_slot(capacity=5)
    service = BookingService(db)
    booking = service.place_booking(ref, 2, payer)
    service.place_booking(ref, 1, Payer("user-2", "Grace Hopper", "grace@example.com"))
    booking_id = booking.id

    def cancel(index: int) -> str:
        session = session_factory()
        try:
            BookingService(session).cancel_booking(booking_id)
            return "cancelled"
        except AlreadyCancelledError:
            return "already"
        finally:
            session.close()

    outcomes = _run_together(5, cancel)

    assert outcomes.count("cancelled") == 1
    assert outcomes.count("already") == 4
    slot = SlotRepository(db).get(ref)
    db.refresh(slot)
    assert slot.booked_count == 1


def test_simultaneous_joins_leave_one_place_in_line(db, session_factory, make_slot):
    ref = make_slot(capacity=1)
    guest = Payer("user-eager", "Eager", "eager@example.com")

    def join(index: int) -> str:
        session = session_factory()
        try:
            WaitlistService(session).join(ref, 1, guest)
            return "joined"
        except AlreadyWaitingError:
            return "duplicate"
        finally:
            session.close()

    outcomes = _run_together(8, join)

    assert outcomes.count("joined") == 1
    assert outcomes.count("duplicate") == 7
    assert db.query(WaitlistEntry).filter(WaitlistEntry.user_id == "user-eager").count() == 1
