# src/infrastructure/repositories/waitlist_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import delete, select, update

from src.domain.value_objects import Payer, SlotRef
from src.domain.state_machine import WaitlistStatus
from src.infrastructure.db.models import WaitlistEntry


def _for_slot(stmt, slot_ref: SlotRef):
    return (
        stmt.where(WaitlistEntry.experience_id == slot_ref.experience_id)
        .where(WaitlistEntry.slot_date == slot_ref.date)
        .where(WaitlistEntry.slot_time == slot_ref.time)
    )


class WaitlistRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, entry_id: str) -> WaitlistEntry | None:
        stmt = select(WaitlistEntry).where(WaitlistEntry.id == entry_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def find_waiting_for_user(self, slot_ref: SlotRef, user_id: str) -> WaitlistEntry | None:
        stmt = _for_slot(select(WaitlistEntry), slot_ref)
        stmt = (
            stmt.where(WaitlistEntry.user_id == user_id)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
        )
        return self.db.execute(stmt).scalars().first()

    def list_for_user(self, user_id: str) -> list[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.user_id == user_id)
            .order_by(WaitlistEntry.created_at.desc(), WaitlistEntry.sequence.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_waiting(self, slot_ref: SlotRef) -> list[WaitlistEntry]:
        """Highest priority first, then strict FIFO by created_at and insertion order."""
        stmt = _for_slot(select(WaitlistEntry), slot_ref)
        stmt = (
            stmt.where(WaitlistEntry.status == WaitlistStatus.WAITING)
            .order_by(
                WaitlistEntry.priority.desc(),
                WaitlistEntry.created_at.asc(),
                WaitlistEntry.sequence.asc(),
            )
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_lapsed_offers(self, now: datetime) -> list[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(WaitlistEntry.status == WaitlistStatus.OFFERED)
            .where(WaitlistEntry.expires_at <= now)
            .order_by(WaitlistEntry.expires_at)
        )
        return list(self.db.execute(stmt).scalars().all())

    def position(self, entry: WaitlistEntry) -> int:
        entries = self.list_waiting(entry.slot_ref)
        for index, item in enumerate(entries, start=1):
            if item.id == entry.id:
                return index
        return len(entries)

    def create_entry(
        self,
        slot_ref: SlotRef,
        requester: Payer,
        quantity: int,
        priority: int,
        created_at: datetime,
    ) -> WaitlistEntry:
        entry = WaitlistEntry(
            experience_id=slot_ref.experience_id,
            slot_date=slot_ref.date,
            slot_time=slot_ref.time,
            user_id=requester.user_id,
            user_name=requester.name,
            user_email=requester.email,
            quantity=quantity,
            priority=priority,
            status=WaitlistStatus.WAITING,
            created_at=created_at,
            updated_at=created_at,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def transition(
        self,
        entry: WaitlistEntry,
        from_status: WaitlistStatus,
        to_status: WaitlistStatus,
        at: datetime,
        **values,
    ) -> bool:
        """
        Conditional status write; False means somebody else moved the entry
        out of from_status first.
        """
        stmt = (
            update(WaitlistEntry)
            .where(WaitlistEntry.id == entry.id)
            .where(WaitlistEntry.status == from_status)
            .values(status=to_status, updated_at=at, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.refresh(entry)
        return result.rowcount == 1

    def delete_waiting(self, entry: WaitlistEntry) -> bool:
        stmt = (
            delete(WaitlistEntry)
            .where(WaitlistEntry.id == entry.id)
            .where(WaitlistEntry.status == WaitlistStatus.WAITING)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount == 1:
            self.db.expunge(entry)
            return True
        return False
