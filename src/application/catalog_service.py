import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.application.side_effects import SideEffectDispatcher, dispatch_safely
from src.application.waitlist_promotion import WaitlistPromoter
from src.domain.exceptions import CapacityBelowBookedError, InvalidQuantityError, NotFoundError
from src.domain.group_pricing import to_money
from src.domain.value_objects import SlotRef
from src.infrastructure.db.models import Experience, Slot, utc_now
from src.infrastructure.db.session import transaction_scope
from src.infrastructure.repositories.slot_repository import SlotRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotSpec:
    date: str
    time: str
    capacity: int
    price_override: Decimal | None = None


class CatalogService:
    """Experiences and their slots. Capacity edits go through SlotRepository."""

    def __init__(
        self,
        db: Session,
        dispatcher: SideEffectDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.slot_repository = SlotRepository(db)
        self.promoter = WaitlistPromoter(db, clock=clock)

    def create_experience(
        self,
        title: str,
        price,
        slots: list[SlotSpec],
        location: str | None = None,
    ) -> Experience:
        with transaction_scope(self.db):
            experience = Experience(title=title, price=to_money(price), location=location)
            self.db.add(experience)
            self.db.flush()
            for spec in slots:
                self.slot_repository.add_slot(
                    experience_id=experience.id,
                    date=spec.date,
                    time=spec.time,
                    capacity=spec.capacity,
                    price_override=(
                        to_money(spec.price_override)
                        if spec.price_override is not None
                        else None
                    ),
                )
            try:
                self.db.flush()
            except IntegrityError as exc:
                raise InvalidQuantityError("Duplicate slot date/time for experience") from exc

        logger.info("Created experience %s with %s slot(s)", experience.id, len(slots))
        return experience

    def get_experience(self, experience_id: str) -> Experience:
        experience = self.slot_repository.get_experience(experience_id)
        if not experience:
            raise NotFoundError("Experience not found")
        return experience

    def list_slots(self, experience_id: str) -> list[Slot]:
        self.get_experience(experience_id)
        return self.slot_repository.list_for_experience(experience_id)

    def adjust_capacity(self, slot_ref: SlotRef, capacity: int) -> Slot:
        """
        Never below the live booked_count. Added seats are offered to the
        waitlist straight away.
        """
        with transaction_scope(self.db):
            slot = self.slot_repository.get(slot_ref)
            previous = slot.capacity
            if not self.slot_repository.set_capacity(slot, capacity):
                raise CapacityBelowBookedError(
                    f"Capacity {capacity} is below the {slot.booked_count} seat(s) already booked"
                )
            offers = []
            if capacity > previous:
                offers = self.promoter.promote(slot_ref, capacity - previous)

        logger.info("Capacity of %s changed %s -> %s", slot_ref, previous, capacity)
        for entry in offers:
            dispatch_safely(self.dispatcher.notify_waitlist_offer, entry)
        return slot
