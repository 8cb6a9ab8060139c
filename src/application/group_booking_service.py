import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from src.application.booking_service import BookingService
from src.application.side_effects import SideEffectDispatcher, dispatch_safely
from src.domain.exceptions import GroupTooSmallError, NotFoundError
from src.domain.group_pricing import GroupQuote, quote_group, split_evenly
from src.domain.value_objects import ParticipantInfo, Payer, SlotRef
from src.domain.state_machine import PaymentStatus
from src.infrastructure.db.models import Booking, utc_now
from src.infrastructure.db.session import transaction_scope


logger = logging.getLogger(__name__)

MIN_GROUP_SIZE = 2


class GroupBookingService:
    """
    One reservation for the whole group, then the participant list and an
    equal payment split hung off the resulting booking.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher | None = None,
        booking_service: BookingService | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.booking_service = booking_service or BookingService(
            db,
            dispatcher=dispatcher,
            clock=clock,
        )
        self.dispatcher = dispatcher or self.booking_service.dispatcher

    def create_group_booking(
        self,
        slot_ref: SlotRef,
        participants: list[ParticipantInfo],
        organizer_id: str,
        payment_method: str = "split",
    ) -> tuple[Booking, GroupQuote]:
        quantity = len(participants)
        if quantity < MIN_GROUP_SIZE:
            raise GroupTooSmallError(
                f"Group booking requires at least {MIN_GROUP_SIZE} participants"
            )

        organizer = participants[0]
        with transaction_scope(self.db):
            booking, slot = self.booking_service.reserve(
                slot_ref,
                quantity,
                Payer(organizer_id, organizer.name, organizer.email),
            )
            quote = quote_group(quantity, booking.unit_price)

            booking.is_group_booking = True
            booking.total_price = quote.final_total
            booking.discount_percentage = quote.discount_percentage
            booking.discount_amount = quote.discount_amount
            if payment_method == "full":
                booking.payment_status = PaymentStatus.PAID

            shares = split_evenly(quote.final_total, quantity)
            for position, (participant, share) in enumerate(zip(participants, shares)):
                is_organizer = position == 0
                self.booking_service.booking_repository.add_participant(
                    booking,
                    position=position,
                    name=participant.name,
                    email=participant.email,
                    phone=participant.phone,
                    is_organizer=is_organizer,
                )
                # Organizer pays up front; everyone else owes their share.
                self.booking_service.booking_repository.add_payment_split(
                    booking,
                    position=position,
                    participant_email=participant.email,
                    amount=share,
                    status=PaymentStatus.PAID if is_organizer else PaymentStatus.PENDING,
                )
            self.db.flush()
            booked_count = slot.booked_count

        logger.info(
            "Group booking %s: %s participants on %s, %s%% off, total %s",
            booking.id,
            quantity,
            slot_ref,
            quote.discount_percentage,
            quote.final_total,
        )
        self.booking_service.announce_booking(booking, slot_ref, booked_count)
        return booking, quote

    def list_group_bookings(self, user_id: str) -> list[Booking]:
        return self.booking_service.list_bookings(user_id, group_only=True)

    def send_payment_reminders(self, booking_id: str, requester_id: str) -> int:
        booking = self._owned_group_booking(booking_id, requester_id)
        pending = [
            split for split in booking.payment_splits
            if split.status == PaymentStatus.PENDING
        ]
        if pending:
            dispatch_safely(self.dispatcher.notify_payment_reminder, booking, pending)
        return len(pending)

    def cancel_group_booking(self, booking_id: str, requester_id: str) -> Booking:
        """Releases the whole group quantity in one call, like any booking."""
        self._owned_group_booking(booking_id, requester_id)
        return self.booking_service.cancel_booking(booking_id, requester_id=requester_id)

    def _owned_group_booking(self, booking_id: str, requester_id: str) -> Booking:
        booking = self.booking_service.booking_repository.get_by_id(booking_id)
        if not booking or not booking.is_group_booking or booking.user_id != requester_id:
            raise NotFoundError("Group booking not found")
        return booking
