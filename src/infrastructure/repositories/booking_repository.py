# src/infrastructure/repositories/booking_repository.py

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from src.domain.exceptions import IdempotencyConflictError
from src.domain.value_objects import Payer, SlotRef
from src.domain.state_machine import BookingStatus, PaymentStatus
from src.infrastructure.db.models import (
    Booking,
    BookingParticipant,
    PaymentConfirmation,
    PaymentSplit,
)


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_idempotency_key(
        self,
        idempotency_key: str,
    ) -> Booking | None:
        stmt = select(Booking).where(
            Booking.idempotency_key == idempotency_key
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_user(self, user_id: str, group_only: bool = False) -> list[Booking]:
        stmt = select(Booking).where(Booking.user_id == user_id)
        if group_only:
            stmt = stmt.where(Booking.is_group_booking.is_(True))
        stmt = stmt.order_by(Booking.created_at.desc())
        return list(self.db.execute(stmt).scalars().all())

    def list_confirmed(
        self,
        before_date: str | None = None,
        on_date: str | None = None,
    ) -> list[Booking]:
        stmt = select(Booking).where(Booking.status == BookingStatus.CONFIRMED)
        if before_date is not None:
            stmt = stmt.where(Booking.slot_date < before_date)
        if on_date is not None:
            stmt = stmt.where(Booking.slot_date == on_date)
        stmt = stmt.order_by(Booking.slot_date, Booking.slot_time)
        return list(self.db.execute(stmt).scalars().all())

    def create_booking(
        self,
        slot_ref: SlotRef,
        payer: Payer,
        quantity: int,
        unit_price: Decimal,
        total_price: Decimal,
        idempotency_key: str | None = None,
        created_at: datetime | None = None,
    ) -> Booking:

        # Idempotency Check
        if idempotency_key:
            existing = self.get_by_idempotency_key(idempotency_key)
            if existing:
                raise IdempotencyConflictError(
                    "Duplicate idempotent request"
                )

        booking = Booking(
            experience_id=slot_ref.experience_id,
            slot_date=slot_ref.date,
            slot_time=slot_ref.time,
            user_id=payer.user_id,
            user_name=payer.name,
            user_email=payer.email,
            quantity=quantity,
            unit_price=unit_price,
            total_price=total_price,
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PENDING,
            idempotency_key=idempotency_key,
        )
        if created_at is not None:
            booking.created_at = created_at
            booking.updated_at = created_at

        self.db.add(booking)
        self.db.flush()
        return booking

    def add_participant(
        self,
        booking: Booking,
        position: int,
        name: str,
        email: str,
        phone: str = "",
        is_organizer: bool = False,
    ) -> BookingParticipant:
        participant = BookingParticipant(
            position=position,
            name=name,
            email=email,
            phone=phone or "",
            is_organizer=is_organizer,
        )
        booking.participants.append(participant)
        return participant

    def add_payment_split(
        self,
        booking: Booking,
        position: int,
        participant_email: str,
        amount: Decimal,
        status: PaymentStatus,
    ) -> PaymentSplit:
        split = PaymentSplit(
            position=position,
            participant_email=participant_email,
            amount=amount,
            status=status,
        )
        booking.payment_splits.append(split)
        return split

    def transition_status(
        self,
        booking: Booking,
        from_status: BookingStatus,
        to_status: BookingStatus,
        at: datetime,
    ) -> bool:
        """
        Conditional status write. Returns False if the row was no longer in
        from_status, so two concurrent cancels cannot both succeed.
        """
        values = {"status": to_status, "updated_at": at}
        if to_status == BookingStatus.CANCELLED:
            values["cancelled_at"] = at

        stmt = (
            update(Booking)
            .where(Booking.id == booking.id)
            .where(Booking.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        self.db.refresh(booking)
        return result.rowcount == 1

    def get_payment_confirmation(
        self,
        provider: str,
        payment_id: str,
    ) -> PaymentConfirmation | None:
        stmt = (
            select(PaymentConfirmation)
            .where(PaymentConfirmation.provider == provider)
            .where(PaymentConfirmation.payment_id == payment_id)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add_payment_confirmation(
        self,
        provider: str,
        payment_id: str,
        booking_id: str,
        participant_email: str | None,
        payload_hash: str,
    ) -> PaymentConfirmation:
        confirmation = PaymentConfirmation(
            provider=provider,
            payment_id=payment_id,
            booking_id=booking_id,
            participant_email=participant_email,
            payload_hash=payload_hash,
        )
        self.db.add(confirmation)
        return confirmation
