import logging
import os
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from src.domain.value_objects import SlotRef
from src.domain.state_machine import WaitlistStateMachine, WaitlistStatus
from src.infrastructure.db.models import WaitlistEntry, utc_now
from src.infrastructure.repositories.waitlist_repository import WaitlistRepository


logger = logging.getLogger(__name__)

WAITLIST_OFFER_TTL_HOURS = float(os.getenv("WAITLIST_OFFER_TTL_HOURS", "24"))


class WaitlistPromoter:
    """
    Turns freed capacity into time-boxed offers.

    Greedy, one entry at a time: walk waiting entries by priority desc then
    created_at asc, offer each one whose quantity still fits in the remaining
    seats, skip the ones that do not. Offers do not hold capacity; accept
    re-checks it with the conditional write.
    """

    def __init__(
        self,
        db: Session,
        clock: Callable[[], datetime] = utc_now,
        offer_ttl: timedelta | None = None,
    ):
        self.db = db
        self.clock = clock
        self.offer_ttl = offer_ttl or timedelta(hours=WAITLIST_OFFER_TTL_HOURS)
        self.waitlist_repository = WaitlistRepository(db)

    def promote(self, slot_ref: SlotRef, available_seats: int) -> list[WaitlistEntry]:
        if available_seats <= 0:
            return []

        now = self.clock()
        remaining = available_seats
        offered: list[WaitlistEntry] = []

        for entry in self.waitlist_repository.list_waiting(slot_ref):
            if remaining <= 0:
                break
            if entry.quantity > remaining:
                logger.debug(
                    "Skipping waitlist entry %s: wants %s, %s left",
                    entry.id,
                    entry.quantity,
                    remaining,
                )
                continue

            WaitlistStateMachine.validate_transition(entry.status, WaitlistStatus.OFFERED)
            moved = self.waitlist_repository.transition(
                entry,
                WaitlistStatus.WAITING,
                WaitlistStatus.OFFERED,
                at=now,
                expires_at=now + self.offer_ttl,
            )
            if not moved:
                # Left the queue concurrently.
                continue

            remaining -= entry.quantity
            offered.append(entry)

        if offered:
            logger.info(
                "Promoted %s waitlist entries for slot %s (%s of %s seats offered)",
                len(offered),
                slot_ref,
                available_seats - remaining,
                available_seats,
            )
        return offered
