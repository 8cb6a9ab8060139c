import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.pricing import CatalogPricing, PricingProvider
from src.application.side_effects import SideEffectDispatcher, dispatch_safely
from src.application.waitlist_promotion import WaitlistPromoter
from src.domain.exceptions import (
    AlreadyCancelledError,
    ConcurrentConflictError,
    IdempotencyConflictError,
    InsufficientCapacityError,
    InvalidQuantityError,
    InvalidStateTransitionError,
    NotFoundError,
    PaymentAlreadyRecordedError,
)
from src.domain.group_pricing import to_money
from src.domain.value_objects import Payer, SlotRef
from src.domain.state_machine import (
    BookingStateMachine,
    BookingStatus,
    PaymentStateMachine,
    PaymentStatus,
)
from src.infrastructure.db.models import Booking, Slot, WaitlistEntry, utc_now
from src.infrastructure.db.session import transaction_scope
from src.infrastructure.repositories.booking_repository import BookingRepository
from src.infrastructure.repositories.slot_repository import SlotRepository


logger = logging.getLogger(__name__)


class BookingService:
    """
    Reservation coordinator.

    Optimistic read, then an atomic commit-time recheck: the slot is read to
    fail fast, but the only arbiter of capacity is the conditional UPDATE in
    SlotRepository.reserve, executed in the same transaction that creates
    the booking. Side effects run only after commit.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher | None = None,
        pricing: PricingProvider | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.pricing = pricing or CatalogPricing(db)
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.slot_repository = SlotRepository(db)
        self.promoter = WaitlistPromoter(db, clock=clock)

    # -----------------------------
    # Queries
    # -----------------------------
    def get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    def list_bookings(self, user_id: str, group_only: bool = False) -> list[Booking]:
        return self.booking_repository.list_for_user(user_id, group_only=group_only)

    # -----------------------------
    # Placement
    # -----------------------------
    def place_booking(
        self,
        slot_ref: SlotRef,
        quantity: int,
        payer: Payer,
        unit_price: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> Booking:
        with transaction_scope(self.db):
            booking, slot = self.reserve(
                slot_ref,
                quantity,
                payer,
                unit_price=unit_price,
                idempotency_key=idempotency_key,
            )
            booked_count = slot.booked_count

        logger.info(
            "Reserved %s seat(s) on %s for user %s. booking_id=%s",
            quantity,
            slot_ref,
            payer.user_id,
            booking.id,
        )
        self.announce_booking(booking, slot_ref, booked_count)
        return booking

    def reserve(
        self,
        slot_ref: SlotRef,
        quantity: int,
        payer: Payer,
        unit_price: Decimal | None = None,
        idempotency_key: str | None = None,
        precheck: bool = True,
    ) -> tuple[Booking, Slot]:
        """
        Conditional increment plus booking creation, inside the caller's
        transaction. Does not commit.
        """
        if quantity <= 0:
            raise InvalidQuantityError(f"quantity must be positive, got {quantity}")

        if not self.slot_repository.get_experience(slot_ref.experience_id):
            raise NotFoundError("Experience not found")
        slot = self.slot_repository.get(slot_ref)

        if precheck and slot.booked_count + quantity > slot.capacity:
            logger.warning(
                "No capacity on %s: requested %s, available %s",
                slot_ref,
                quantity,
                slot.available,
            )
            raise InsufficientCapacityError(quantity, slot.available)

        if idempotency_key and self.booking_repository.get_by_idempotency_key(idempotency_key):
            raise IdempotencyConflictError("Duplicate idempotent request")

        price = Decimal(unit_price) if unit_price is not None else self.pricing.get_unit_price(slot_ref)

        if not self.slot_repository.reserve(slot, quantity):
            logger.warning(
                "Conditional increment lost the race on %s for quantity %s",
                slot_ref,
                quantity,
            )
            raise ConcurrentConflictError()

        try:
            booking = self.booking_repository.create_booking(
                slot_ref=slot_ref,
                payer=payer,
                quantity=quantity,
                unit_price=to_money(price),
                total_price=to_money(price * quantity),
                idempotency_key=idempotency_key,
                created_at=self.clock(),
            )
        except IntegrityError as exc:
            raise IdempotencyConflictError("Duplicate idempotent request") from exc

        return booking, slot

    def announce_booking(self, booking: Booking, slot_ref: SlotRef, booked_count: int) -> None:
        dispatch_safely(self.dispatcher.notify_booking_created, booking)
        dispatch_safely(self.dispatcher.notify_capacity_changed, slot_ref, booked_count)

    # -----------------------------
    # Cancellation
    # -----------------------------
    def cancel_booking(self, booking_id: str, requester_id: str | None = None) -> Booking:
        """
        confirmed -> cancelled, release the booked quantity, then offer the
        freed seats to the waitlist. A second call fails AlreadyCancelled and
        releases nothing.
        """
        offers: list[WaitlistEntry] = []
        booked_count = None

        with transaction_scope(self.db):
            booking = self.get_booking(booking_id)
            if requester_id is not None and booking.user_id != requester_id:
                raise NotFoundError("Booking not found")
            if booking.status == BookingStatus.CANCELLED:
                raise AlreadyCancelledError("Booking is already cancelled")
            BookingStateMachine.validate_transition(booking.status, BookingStatus.CANCELLED)

            if not self.booking_repository.transition_status(
                booking,
                BookingStatus.CONFIRMED,
                BookingStatus.CANCELLED,
                at=self.clock(),
            ):
                raise AlreadyCancelledError("Booking is already cancelled")

            self._refund_payments(booking)

            slot = self.slot_repository.find(booking.slot_ref)
            if slot:
                self.slot_repository.release(slot, booking.quantity)
                booked_count = slot.booked_count
                offers = self.promoter.promote(booking.slot_ref, booking.quantity)
            else:
                logger.warning(
                    "Slot %s vanished; cancelled booking %s without releasing capacity",
                    booking.slot_ref,
                    booking.id,
                )

        logger.info("Cancelled booking %s (%s seat(s))", booking.id, booking.quantity)
        dispatch_safely(self.dispatcher.notify_booking_cancelled, booking)
        if booked_count is not None:
            dispatch_safely(self.dispatcher.notify_capacity_changed, booking.slot_ref, booked_count)
        for entry in offers:
            dispatch_safely(self.dispatcher.notify_waitlist_offer, entry)
        return booking

    def _refund_payments(self, booking: Booking) -> None:
        # Records the refund obligation; the money movement is external.
        if booking.payment_status == PaymentStatus.PAID:
            booking.payment_status = PaymentStatus.REFUNDED
        for split in booking.payment_splits:
            if split.status == PaymentStatus.PAID:
                split.status = PaymentStatus.REFUNDED

    # -----------------------------
    # Payment signal
    # -----------------------------
    def record_payment(
        self,
        booking_id: str,
        provider: str,
        payment_id: str,
        payload_hash: str,
        participant_email: str | None = None,
    ) -> Booking:
        """
        Apply a confirmed-payment signal to the whole booking, or to one
        participant's split of a group booking.
        """
        with transaction_scope(self.db):
            booking = self.get_booking(booking_id)

            existing = self.booking_repository.get_payment_confirmation(provider, payment_id)
            if existing:
                if existing.booking_id == booking.id and existing.participant_email == participant_email:
                    return booking
                raise PaymentAlreadyRecordedError("Payment id already linked with another booking.")

            if booking.status == BookingStatus.CANCELLED:
                raise InvalidStateTransitionError(booking.status.value, PaymentStatus.PAID.value)

            if participant_email:
                split = _find_split(booking, participant_email)
                PaymentStateMachine.validate_transition(split.status, PaymentStatus.PAID)
                split.status = PaymentStatus.PAID
                if all(s.status == PaymentStatus.PAID for s in booking.payment_splits):
                    booking.payment_status = PaymentStatus.PAID
            else:
                PaymentStateMachine.validate_transition(booking.payment_status, PaymentStatus.PAID)
                booking.payment_status = PaymentStatus.PAID
                for split in booking.payment_splits:
                    if split.status == PaymentStatus.PENDING:
                        split.status = PaymentStatus.PAID

            self.booking_repository.add_payment_confirmation(
                provider=provider,
                payment_id=payment_id,
                booking_id=booking.id,
                participant_email=participant_email,
                payload_hash=payload_hash,
            )
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise PaymentAlreadyRecordedError(
                    "Duplicate payment signal detected for this payment."
                ) from exc

        logger.info(
            "Payment %s recorded for booking %s (participant=%s)",
            payment_id,
            booking.id,
            participant_email,
        )
        return booking

    # -----------------------------
    # Maintenance
    # -----------------------------
    def complete_past_bookings(self, today: str) -> int:
        """Mark confirmed bookings whose slot date is before today as completed."""
        completed = 0
        with transaction_scope(self.db):
            now = self.clock()
            for booking in self.booking_repository.list_confirmed(before_date=today):
                if self.booking_repository.transition_status(
                    booking,
                    BookingStatus.CONFIRMED,
                    BookingStatus.COMPLETED,
                    at=now,
                ):
                    completed += 1
        if completed:
            logger.info("Marked %s booking(s) completed before %s", completed, today)
        return completed

    def send_reminders(self, slot_date: str) -> int:
        bookings = self.booking_repository.list_confirmed(on_date=slot_date)
        sent = sum(
            1
            for booking in bookings
            if dispatch_safely(self.dispatcher.notify_booking_reminder, booking)
        )
        logger.info("Sent %s of %s reminder(s) for %s", sent, len(bookings), slot_date)
        return sent


def _find_split(booking: Booking, participant_email: str):
    wanted = participant_email.strip().lower()
    for split in booking.payment_splits:
        if split.participant_email.lower() == wanted:
            return split
    raise NotFoundError(f"No payment split for {participant_email}")
