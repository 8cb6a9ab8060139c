from datetime import datetime
from decimal import Decimal
from typing import Literal
from pydantic import BaseModel, Field

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
TIME_PATTERN = r"^\d{2}:\d{2}$"


class SlotCreate(BaseModel):
    date: str = Field(pattern=DATE_PATTERN)
    time: str = Field(pattern=TIME_PATTERN)
    capacity: int = Field(ge=0)
    price_override: Decimal | None = Field(default=None, ge=0)


class ExperienceCreate(BaseModel):
    title: str
    price: Decimal = Field(ge=0)
    location: str | None = None
    slots: list[SlotCreate] = Field(default_factory=list)


class SlotResponse(BaseModel):
    date: str
    time: str
    capacity: int
    booked_count: int
    available: int
    price_override: Decimal | None = None


class ExperienceResponse(BaseModel):
    id: str
    title: str
    price: Decimal
    location: str | None = None
    slots: list[SlotResponse]


class CapacityUpdateRequest(BaseModel):
    date: str = Field(pattern=DATE_PATTERN)
    time: str = Field(pattern=TIME_PATTERN)
    capacity: int = Field(ge=0)


class BookingRequest(BaseModel):
    user_id: str
    user_name: str
    user_email: str
    experience_id: str
    slot_date: str = Field(pattern=DATE_PATTERN)
    slot_time: str = Field(pattern=TIME_PATTERN)
    quantity: int = Field(gt=0)
    idempotency_key: str | None = None


class ParticipantResponse(BaseModel):
    name: str
    email: str
    phone: str
    is_organizer: bool


class PaymentSplitResponse(BaseModel):
    participant_email: str
    amount: Decimal
    status: str


class BookingResponse(BaseModel):
    booking_id: str
    experience_id: str
    slot_date: str
    slot_time: str
    user_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    discount_percentage: int
    discount_amount: Decimal
    status: str
    payment_status: str
    is_group_booking: bool
    participants: list[ParticipantResponse] = Field(default_factory=list)
    payment_splits: list[PaymentSplitResponse] = Field(default_factory=list)
    created_at: datetime
    cancelled_at: datetime | None = None


class CancelRequest(BaseModel):
    user_id: str | None = None


class RequesterRequest(BaseModel):
    user_id: str


class WaitlistJoinRequest(BaseModel):
    user_id: str
    user_name: str
    user_email: str
    experience_id: str
    slot_date: str = Field(pattern=DATE_PATTERN)
    slot_time: str = Field(pattern=TIME_PATTERN)
    quantity: int = Field(gt=0)
    priority: int = 0


class WaitlistEntryResponse(BaseModel):
    waitlist_id: str
    experience_id: str
    slot_date: str
    slot_time: str
    user_id: str
    quantity: int
    priority: int
    status: str
    position: int | None = None
    expires_at: datetime | None = None
    booking_id: str | None = None
    created_at: datetime


class WaitlistProcessRequest(BaseModel):
    experience_id: str
    slot_date: str = Field(pattern=DATE_PATTERN)
    slot_time: str = Field(pattern=TIME_PATTERN)
    available_seats: int = Field(gt=0)


class WaitlistProcessResponse(BaseModel):
    processed: int
    offered: list[WaitlistEntryResponse]


class WaitlistExpireResponse(BaseModel):
    expired: int


class GroupParticipant(BaseModel):
    name: str
    email: str
    phone: str = ""


class GroupBookingRequest(BaseModel):
    user_id: str
    experience_id: str
    slot_date: str = Field(pattern=DATE_PATTERN)
    slot_time: str = Field(pattern=TIME_PATTERN)
    participants: list[GroupParticipant] = Field(min_length=1)
    payment_method: Literal["split", "full"] = "split"


class GroupBookingResponse(BaseModel):
    booking: BookingResponse
    discount_applied: int
    total_saved: Decimal


class ReminderResponse(BaseModel):
    reminded: int
    message: str


class OutboxEventResponse(BaseModel):
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    status: str
    attempts: int
    created_at: str
