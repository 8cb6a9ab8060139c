# src/infrastructure/db/models.py

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Enum,
    Numeric,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from src.infrastructure.db.session import Base
from src.domain.value_objects import SlotRef
from src.domain.state_machine import BookingStatus, PaymentStatus, WaitlistStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid4())


PAYMENT_STATUS = Enum(PaymentStatus, name="payment_status")


class Experience(Base):
    """Parent of a set of bookable slots."""

    __tablename__ = "experiences"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    location: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_experience_price_nonnegative"),
    )


class Slot(Base):
    """
    Authoritative capacity record.
    booked_count is mutated only through conditional UPDATE statements
    issued by SlotRepository.
    """

    __tablename__ = "slots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experience_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("experiences.id"),
        nullable=False,
    )
    date: Mapped[str] = mapped_column(String(10), nullable=False)
    time: Mapped[str] = mapped_column(String(5), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_override: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "experience_id",
            "date",
            "time",
            name="uq_slot_experience_date_time",
        ),
        CheckConstraint("capacity >= 0", name="ck_slot_capacity_nonnegative"),
        CheckConstraint("booked_count >= 0", name="ck_slot_booked_nonnegative"),
        CheckConstraint("booked_count <= capacity", name="ck_slot_booked_lte_capacity"),
    )

    @property
    def ref(self) -> SlotRef:
        return SlotRef(self.experience_id, self.date, self.time)

    @property
    def available(self) -> int:
        return max(self.capacity - self.booked_count, 0)


class Booking(Base):
    """
    Booking table reflecting domain state.
    References its slot by (experience_id, slot_date, slot_time);
    never deleted.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    experience_id: Mapped[str] = mapped_column(String(36), nullable=False)
    slot_date: Mapped[str] = mapped_column(String(10), nullable=False)
    slot_time: Mapped[str] = mapped_column(String(5), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str] = mapped_column(String(128), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        default=Decimal("0.00"),
    )
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status"),
        nullable=False,
        default=BookingStatus.CONFIRMED,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        PAYMENT_STATUS,
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    is_group_booking: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    participants: Mapped[list["BookingParticipant"]] = relationship(
        back_populates="booking",
        order_by="BookingParticipant.position",
        cascade="all, delete-orphan",
    )
    payment_splits: Mapped[list["PaymentSplit"]] = relationship(
        back_populates="booking",
        order_by="PaymentSplit.position",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint(
            "idempotency_key",
            name="uq_booking_idempotency_key",
        ),
        CheckConstraint(
            "quantity > 0",
            name="ck_booking_quantity_positive",
        ),
        Index("ix_booking_slot", "experience_id", "slot_date", "slot_time"),
        Index("ix_booking_user", "user_id"),
    )

    @property
    def slot_ref(self) -> SlotRef:
        return SlotRef(self.experience_id, self.slot_date, self.slot_time)


class BookingParticipant(Base):
    __tablename__ = "booking_participants"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    is_organizer: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    booking: Mapped[Booking] = relationship(back_populates="participants")


class PaymentSplit(Base):
    __tablename__ = "payment_splits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    participant_email: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        PAYMENT_STATUS,
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    booking: Mapped[Booking] = relationship(back_populates="payment_splits")

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_split_amount_nonnegative"),
    )


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    # Insertion order; breaks created_at ties so equal-priority entries stay FIFO.
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_uuid)
    experience_id: Mapped[str] = mapped_column(String(36), nullable=False)
    slot_date: Mapped[str] = mapped_column(String(10), nullable=False)
    slot_time: Mapped[str] = mapped_column(String(5), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_name: Mapped[str] = mapped_column(String(128), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[WaitlistStatus] = mapped_column(
        Enum(WaitlistStatus, name="waitlist_status"),
        nullable=False,
        default=WaitlistStatus.WAITING,
    )
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    booking_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_waitlist_quantity_positive"),
        Index("ix_waitlist_slot_status", "experience_id", "slot_date", "slot_time", "status"),
        Index("ix_waitlist_user", "user_id"),
        Index("ix_waitlist_expires_at", "expires_at"),
        # One open place in line per user and slot.
        Index(
            "uq_waitlist_user_waiting",
            "experience_id",
            "slot_date",
            "slot_time",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'WAITING'"),
            sqlite_where=text("status = 'WAITING'"),
        ),
    )

    @property
    def slot_ref(self) -> SlotRef:
        return SlotRef(self.experience_id, self.slot_date, self.slot_time)


class PaymentConfirmation(Base):
    __tablename__ = "payment_confirmations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_id: Mapped[str] = mapped_column(String(128), nullable=False)
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False)
    participant_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("provider", "payment_id", name="uq_payment_provider_payment_id"),
    )


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    aggregate_type: Mapped[str] = mapped_column(String(64), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )
