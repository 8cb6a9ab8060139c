import json
import logging

from src.application.booking_service import BookingService
from src.application.side_effects import (
    CompositeDispatcher,
    LoggingDispatcher,
    OutboxDispatcher,
    SideEffectDispatcher,
    dispatch_safely,
)
from src.infrastructure.repositories.outbox_repository import OutboxRepository


class BrokenDispatcher(SideEffectDispatcher):

    def notify_booking_cancelled(self, booking):
        raise ConnectionError("smtp unreachable")


def test_dispatch_safely_swallows_and_logs(caplog):
    def boom():
        raise RuntimeError("push gateway timeout")

    with caplog.at_level(logging.ERROR):
        assert dispatch_safely(boom) is False

    assert "boom" in caplog.text
    assert dispatch_safely(lambda: None) is True


def test_composite_keeps_going_after_a_failure(db, make_slot, payer, dispatcher):
    ref = make_slot()
    booking = BookingService(db).place_booking(ref, 1, payer)

    CompositeDispatcher([BrokenDispatcher(), dispatcher]).notify_booking_cancelled(booking)

    assert dispatcher.calls == [("booking_cancelled", booking.id)]


def test_logging_dispatcher(db, make_slot, payer, caplog):
    ref = make_slot()

    with caplog.at_level(logging.INFO, logger="src.application.side_effects"):
        booking = BookingService(db, dispatcher=LoggingDispatcher()).place_booking(ref, 2, payer)

    assert f"booking_id={booking.id}" in caplog.text
    assert "booked_count=2" in caplog.text


def test_outbox_records_booking_events_once(db, session_factory, make_slot, payer):
    ref = make_slot()
    outbox = OutboxDispatcher(session_factory)
    booking = BookingService(db, dispatcher=outbox).place_booking(ref, 1, payer)

    outbox.notify_booking_created(booking)

    events = OutboxRepository(db).list_events()
    created = [e for e in events if e.event_type == "BOOKING_CREATED"]
    assert len(created) == 1
    assert created[0].aggregate_id == booking.id
    payload = json.loads(created[0].payload)
    assert payload["quantity"] == 1
    assert payload["total_price"] == "100.00"
    assert [e.event_type for e in events].count("SLOT_AVAILABILITY_UPDATED") == 1


def test_outbox_keeps_every_availability_change(db, session_factory, make_slot, payer):
    ref = make_slot()
    outbox = OutboxDispatcher(session_factory)
    service = BookingService(db, dispatcher=outbox)

    booking = service.place_booking(ref, 1, payer)
    service.cancel_booking(booking.id)

    event_types = [e.event_type for e in OutboxRepository(db).list_events()]
    assert event_types.count("SLOT_AVAILABILITY_UPDATED") == 2
    assert "BOOKING_CANCELLED" in event_types
