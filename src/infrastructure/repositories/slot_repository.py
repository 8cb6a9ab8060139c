# src/infrastructure/repositories/slot_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import case, select, update

from src.domain.exceptions import InvalidQuantityError, SlotNotFoundError
from src.domain.value_objects import SlotRef
from src.infrastructure.db.models import Experience, Slot


class SlotRepository:
    """
    Inventory store. Owns capacity/booked_count for every slot.

    The only ways booked_count changes are reserve() and release(), each a
    single conditional UPDATE so the database linearizes concurrent callers.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_experience(self, experience_id: str) -> Experience | None:
        stmt = select(Experience).where(Experience.id == experience_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def find(self, slot_ref: SlotRef) -> Slot | None:
        stmt = (
            select(Slot)
            .where(Slot.experience_id == slot_ref.experience_id)
            .where(Slot.date == slot_ref.date)
            .where(Slot.time == slot_ref.time)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get(self, slot_ref: SlotRef) -> Slot:
        slot = self.find(slot_ref)
        if not slot:
            raise SlotNotFoundError(slot_ref.experience_id, slot_ref.date, slot_ref.time)
        return slot

    def list_for_experience(self, experience_id: str) -> list[Slot]:
        stmt = (
            select(Slot)
            .where(Slot.experience_id == experience_id)
            .order_by(Slot.date, Slot.time)
        )
        return list(self.db.execute(stmt).scalars().all())

    def add_slot(
        self,
        experience_id: str,
        date: str,
        time: str,
        capacity: int,
        price_override=None,
    ) -> Slot:
        if capacity < 0:
            raise InvalidQuantityError("capacity must be >= 0")
        slot = Slot(
            experience_id=experience_id,
            date=date,
            time=time,
            capacity=capacity,
            booked_count=0,
            price_override=price_override,
        )
        self.db.add(slot)
        return slot

    def reserve(self, slot: Slot, quantity: int) -> bool:
        """
        UPDATE slots SET booked_count = booked_count + :q
        WHERE id = :id AND booked_count <= capacity - :q

        The predicate is evaluated against the live row at write time, not
        against the value loaded earlier. Returns False when zero rows were
        affected, which is the only race-loss signal.
        """
        _ensure_positive(quantity)

        stmt = (
            update(Slot)
            .where(Slot.id == slot.id)
            .where(Slot.booked_count <= Slot.capacity - quantity)
            .values(booked_count=Slot.booked_count + quantity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            return False

        self.db.refresh(slot)
        return True

    def release(self, slot: Slot, quantity: int) -> None:
        """Decrement booked_count by quantity, floored at 0."""
        _ensure_positive(quantity)

        stmt = (
            update(Slot)
            .where(Slot.id == slot.id)
            .values(
                booked_count=case(
                    (Slot.booked_count >= quantity, Slot.booked_count - quantity),
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
        self.db.refresh(slot)

    def set_capacity(self, slot: Slot, capacity: int) -> bool:
        """
        Capacity may never drop below the live booked_count.
        Returns False if the conditional write was rejected.
        """
        if capacity < 0:
            raise InvalidQuantityError("capacity must be >= 0")

        stmt = (
            update(Slot)
            .where(Slot.id == slot.id)
            .where(Slot.booked_count <= capacity)
            .values(capacity=capacity)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.refresh(slot)
        return result.rowcount == 1


def _ensure_positive(quantity: int) -> None:
    if quantity <= 0:
        raise InvalidQuantityError(f"quantity must be positive, got {quantity}")
