import logging
import os
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.booking_service import BookingService
from src.application.side_effects import SideEffectDispatcher, dispatch_safely
from src.application.waitlist_promotion import WaitlistPromoter
from src.domain.exceptions import (
    AlreadyWaitingError,
    ConcurrentConflictError,
    InvalidQuantityError,
    NotFoundError,
    OfferExpiredError,
)
from src.domain.value_objects import Payer, SlotRef
from src.domain.state_machine import WaitlistStateMachine, WaitlistStatus
from src.infrastructure.db.models import Booking, WaitlistEntry, utc_now
from src.infrastructure.db.session import transaction_scope
from src.infrastructure.repositories.slot_repository import SlotRepository
from src.infrastructure.repositories.waitlist_repository import WaitlistRepository


logger = logging.getLogger(__name__)

WAITLIST_REOFFER_ON_EXPIRY = os.getenv("WAITLIST_REOFFER_ON_EXPIRY", "true").lower() in {
    "1",
    "true",
    "yes",
}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WaitlistService:
    """
    Waitlist ledger: join/leave, promotion, and the offer state machine
    waiting -> offered -> {booked | expired}.
    """

    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher | None = None,
        booking_service: BookingService | None = None,
        clock: Callable[[], datetime] = utc_now,
        reoffer_on_expiry: bool = WAITLIST_REOFFER_ON_EXPIRY,
    ):
        self.db = db
        self.clock = clock
        self.booking_service = booking_service or BookingService(
            db,
            dispatcher=dispatcher,
            clock=clock,
        )
        self.dispatcher = dispatcher or self.booking_service.dispatcher
        self.reoffer_on_expiry = reoffer_on_expiry
        self.waitlist_repository = WaitlistRepository(db)
        self.slot_repository = SlotRepository(db)
        self.promoter = WaitlistPromoter(db, clock=clock)

    # -----------------------------
    # Queries
    # -----------------------------
    def get_entry(self, entry_id: str) -> WaitlistEntry:
        entry = self.waitlist_repository.get_by_id(entry_id)
        if not entry:
            raise NotFoundError("Waitlist entry not found")
        return entry

    def position(self, entry: WaitlistEntry) -> int | None:
        if entry.status != WaitlistStatus.WAITING:
            return None
        return self.waitlist_repository.position(entry)

    def list_entries(self, user_id: str) -> list[WaitlistEntry]:
        return self.waitlist_repository.list_for_user(user_id)

    # -----------------------------
    # Queue membership
    # -----------------------------
    def join(
        self,
        slot_ref: SlotRef,
        quantity: int,
        requester: Payer,
        priority: int = 0,
    ) -> WaitlistEntry:
        if quantity <= 0:
            raise InvalidQuantityError(f"quantity must be positive, got {quantity}")

        with transaction_scope(self.db):
            self.slot_repository.get(slot_ref)
            if self.waitlist_repository.find_waiting_for_user(slot_ref, requester.user_id):
                raise AlreadyWaitingError("Already on waitlist for this slot")
            try:
                entry = self.waitlist_repository.create_entry(
                    slot_ref=slot_ref,
                    requester=requester,
                    quantity=quantity,
                    priority=priority,
                    created_at=self.clock(),
                )
            except IntegrityError as exc:
                raise AlreadyWaitingError("Already on waitlist for this slot") from exc

        logger.info(
            "User %s joined waitlist for %s (quantity=%s, priority=%s)",
            requester.user_id,
            slot_ref,
            quantity,
            priority,
        )
        return entry

    def leave(self, entry_id: str, requester_id: str) -> None:
        with transaction_scope(self.db):
            entry = self._owned_entry(entry_id, requester_id)
            if entry.status != WaitlistStatus.WAITING or not self.waitlist_repository.delete_waiting(entry):
                raise NotFoundError("Waitlist entry not found")
        logger.info("Waitlist entry %s removed by user %s", entry_id, requester_id)

    # -----------------------------
    # Promotion
    # -----------------------------
    def promote(self, slot_ref: SlotRef, available_seats: int) -> list[WaitlistEntry]:
        with transaction_scope(self.db):
            self.slot_repository.get(slot_ref)
            offers = self.promoter.promote(slot_ref, available_seats)
        self._announce_offers(offers)
        return offers

    # -----------------------------
    # Offer lifecycle
    # -----------------------------
    def accept(self, entry_id: str, requester_id: str) -> Booking:
        now = self.clock()
        entry = self._owned_entry(entry_id, requester_id)

        if entry.status == WaitlistStatus.EXPIRED:
            raise OfferExpiredError("Waitlist offer has expired")
        if entry.status != WaitlistStatus.OFFERED:
            raise NotFoundError("Waitlist offer not found")

        if entry.expires_at is not None and _as_utc(entry.expires_at) <= now:
            # Expiry is detected lazily by whoever looks at the entry next.
            with transaction_scope(self.db):
                offers = self._expire(entry, now)
            self._announce_offers(offers)
            raise OfferExpiredError("Waitlist offer has expired")

        with transaction_scope(self.db):
            # Time has passed since the offer: capacity is re-checked by the
            # conditional write itself, so a shortfall is a ConcurrentConflict.
            booking, slot = self.booking_service.reserve(
                entry.slot_ref,
                entry.quantity,
                Payer(entry.user_id, entry.user_name, entry.user_email),
                precheck=False,
            )
            WaitlistStateMachine.validate_transition(entry.status, WaitlistStatus.BOOKED)
            if not self.waitlist_repository.transition(
                entry,
                WaitlistStatus.OFFERED,
                WaitlistStatus.BOOKED,
                at=now,
                booking_id=booking.id,
                expires_at=None,
            ):
                raise ConcurrentConflictError("Waitlist offer is no longer open")
            booked_count = slot.booked_count

        logger.info("Waitlist entry %s accepted; booking_id=%s", entry.id, booking.id)
        self.booking_service.announce_booking(booking, entry.slot_ref, booked_count)
        return booking

    def decline(self, entry_id: str, requester_id: str) -> WaitlistEntry:
        now = self.clock()
        with transaction_scope(self.db):
            entry = self._owned_entry(entry_id, requester_id)
            if entry.status != WaitlistStatus.OFFERED:
                raise NotFoundError("Waitlist offer not found")
            offers = self._expire(entry, now)
            if entry.status != WaitlistStatus.EXPIRED:
                raise NotFoundError("Waitlist offer not found")

        logger.info("Waitlist offer %s declined by user %s", entry.id, requester_id)
        self._announce_offers(offers)
        return entry

    def expire_offers(self) -> list[WaitlistEntry]:
        """TTL sweep: move every lapsed offer to expired."""
        now = self.clock()
        expired: list[WaitlistEntry] = []
        offers: list[WaitlistEntry] = []

        with transaction_scope(self.db):
            for entry in self.waitlist_repository.list_lapsed_offers(now):
                offers.extend(self._expire(entry, now))
                if entry.status == WaitlistStatus.EXPIRED:
                    expired.append(entry)

        if expired:
            logger.info("Expired %s lapsed waitlist offer(s)", len(expired))
        self._announce_offers(offers)
        return expired

    def _expire(self, entry: WaitlistEntry, now: datetime) -> list[WaitlistEntry]:
        """
        offered -> expired inside the caller's transaction. When re-offering
        is enabled, the seats the offer stood for go to the next in line.
        """
        WaitlistStateMachine.validate_transition(entry.status, WaitlistStatus.EXPIRED)
        if not self.waitlist_repository.transition(
            entry,
            WaitlistStatus.OFFERED,
            WaitlistStatus.EXPIRED,
            at=now,
            expires_at=None,
        ):
            return []
        if not self.reoffer_on_expiry:
            return []
        return self.promoter.promote(entry.slot_ref, entry.quantity)

    def _owned_entry(self, entry_id: str, requester_id: str) -> WaitlistEntry:
        entry = self.waitlist_repository.get_by_id(entry_id)
        if not entry or entry.user_id != requester_id:
            raise NotFoundError("Waitlist entry not found")
        return entry

    def _announce_offers(self, offers: list[WaitlistEntry]) -> None:
        for entry in offers:
            dispatch_safely(self.dispatcher.notify_waitlist_offer, entry)
