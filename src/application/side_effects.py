"""
Outbound side effects of the booking core.

Everything here runs after the reservation transaction has committed. A
dispatcher failure is logged and swallowed; it never changes the outcome
of the operation that triggered it.
"""

import logging
from typing import Callable, Iterable
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from src.domain.value_objects import SlotRef
from src.infrastructure.db.models import Booking, PaymentSplit, WaitlistEntry
from src.infrastructure.repositories.outbox_repository import OutboxRepository


logger = logging.getLogger(__name__)


class SideEffectDispatcher:
    """Fire-and-forget notification interface. Default methods do nothing."""

    def notify_booking_created(self, booking: Booking) -> None:
        pass

    def notify_booking_cancelled(self, booking: Booking) -> None:
        pass

    def notify_capacity_changed(self, slot_ref: SlotRef, booked_count: int) -> None:
        pass

    def notify_waitlist_offer(self, entry: WaitlistEntry) -> None:
        pass

    def notify_payment_reminder(self, booking: Booking, splits: list[PaymentSplit]) -> None:
        pass

    def notify_booking_reminder(self, booking: Booking) -> None:
        pass


class LoggingDispatcher(SideEffectDispatcher):

    def notify_booking_created(self, booking: Booking) -> None:
        logger.info(
            "Booking created. booking_id=%s slot=%s quantity=%s total=%s",
            booking.id,
            booking.slot_ref,
            booking.quantity,
            booking.total_price,
        )

    def notify_booking_cancelled(self, booking: Booking) -> None:
        logger.info(
            "Booking cancelled. booking_id=%s slot=%s quantity=%s",
            booking.id,
            booking.slot_ref,
            booking.quantity,
        )

    def notify_capacity_changed(self, slot_ref: SlotRef, booked_count: int) -> None:
        logger.info("Capacity changed. slot=%s booked_count=%s", slot_ref, booked_count)

    def notify_waitlist_offer(self, entry: WaitlistEntry) -> None:
        logger.info(
            "Waitlist offer made. entry_id=%s user_id=%s expires_at=%s",
            entry.id,
            entry.user_id,
            entry.expires_at,
        )

    def notify_payment_reminder(self, booking: Booking, splits: list[PaymentSplit]) -> None:
        logger.info(
            "Payment reminders queued. booking_id=%s recipients=%s",
            booking.id,
            [split.participant_email for split in splits],
        )

    def notify_booking_reminder(self, booking: Booking) -> None:
        logger.info("Booking reminder. booking_id=%s email=%s", booking.id, booking.user_email)


class OutboxDispatcher(SideEffectDispatcher):
    """
    Records each notification as an outbox row for at-least-once delivery
    by an external relay. Uses its own session so a failure here cannot
    touch the booking transaction.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _record(
        self,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict,
        dedupe_key: str,
    ) -> None:
        db: Session = self.session_factory()
        try:
            OutboxRepository(db).add_event(
                aggregate_type=aggregate_type,
                aggregate_id=aggregate_id,
                event_type=event_type,
                payload=payload,
                dedupe_key=dedupe_key,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def notify_booking_created(self, booking: Booking) -> None:
        self._record(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_CREATED",
            payload=_booking_payload(booking),
            dedupe_key=f"booking:{booking.id}:created",
        )

    def notify_booking_cancelled(self, booking: Booking) -> None:
        self._record(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_CANCELLED",
            payload=_booking_payload(booking),
            dedupe_key=f"booking:{booking.id}:cancelled",
        )

    def notify_capacity_changed(self, slot_ref: SlotRef, booked_count: int) -> None:
        self._record(
            aggregate_type="slot",
            aggregate_id=str(slot_ref),
            event_type="SLOT_AVAILABILITY_UPDATED",
            payload={
                "experience_id": slot_ref.experience_id,
                "slot_date": slot_ref.date,
                "slot_time": slot_ref.time,
                "booked_count": booked_count,
            },
            dedupe_key=f"slot:{slot_ref}:booked:{booked_count}:{uuid4().hex}",
        )

    def notify_waitlist_offer(self, entry: WaitlistEntry) -> None:
        self._record(
            aggregate_type="waitlist_entry",
            aggregate_id=entry.id,
            event_type="WAITLIST_OFFER",
            payload={
                "entry_id": entry.id,
                "user_id": entry.user_id,
                "user_email": entry.user_email,
                "quantity": entry.quantity,
                "expires_at": entry.expires_at,
            },
            dedupe_key=f"waitlist:{entry.id}:offered",
        )

    def notify_payment_reminder(self, booking: Booking, splits: list[PaymentSplit]) -> None:
        for split in splits:
            self._record(
                aggregate_type="booking",
                aggregate_id=booking.id,
                event_type="PAYMENT_REMINDER",
                payload={
                    "booking_id": booking.id,
                    "participant_email": split.participant_email,
                    "amount": split.amount,
                },
                dedupe_key=f"booking:{booking.id}:reminder:{split.participant_email}:{uuid4().hex}",
            )

    def notify_booking_reminder(self, booking: Booking) -> None:
        self._record(
            aggregate_type="booking",
            aggregate_id=booking.id,
            event_type="BOOKING_REMINDER",
            payload=_booking_payload(booking),
            dedupe_key=f"booking:{booking.id}:reminder:{booking.slot_date}",
        )


class CompositeDispatcher(SideEffectDispatcher):
    """Fans each call out to every child; one failing child does not stop the rest."""

    def __init__(self, dispatchers: Iterable[SideEffectDispatcher]):
        self.dispatchers = list(dispatchers)

    def _fan_out(self, method: str, *args) -> None:
        for dispatcher in self.dispatchers:
            dispatch_safely(getattr(dispatcher, method), *args)

    def notify_booking_created(self, booking):
        self._fan_out("notify_booking_created", booking)

    def notify_booking_cancelled(self, booking):
        self._fan_out("notify_booking_cancelled", booking)

    def notify_capacity_changed(self, slot_ref, booked_count):
        self._fan_out("notify_capacity_changed", slot_ref, booked_count)

    def notify_waitlist_offer(self, entry):
        self._fan_out("notify_waitlist_offer", entry)

    def notify_payment_reminder(self, booking, splits):
        self._fan_out("notify_payment_reminder", booking, splits)

    def notify_booking_reminder(self, booking):
        self._fan_out("notify_booking_reminder", booking)


def dispatch_safely(call: Callable, *args) -> bool:
    """Run one side effect. Returns False if it raised."""
    try:
        call(*args)
        return True
    except Exception:
        logger.exception(
            "Side effect %s failed; booking state is unaffected.",
            getattr(call, "__name__", repr(call)),
        )
        return False


def _booking_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "experience_id": booking.experience_id,
        "slot_date": booking.slot_date,
        "slot_time": booking.slot_time,
        "user_id": booking.user_id,
        "user_email": booking.user_email,
        "quantity": booking.quantity,
        "total_price": booking.total_price,
        "status": booking.status.value,
        "is_group_booking": booking.is_group_booking,
    }
