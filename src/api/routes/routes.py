import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session, sessionmaker

from src.infrastructure.db.session import SessionLocal
from src.application.booking_service import BookingService
from src.application.catalog_service import CatalogService, SlotSpec
from src.application.group_booking_service import GroupBookingService, MIN_GROUP_SIZE
from src.application.side_effects import (
    CompositeDispatcher,
    LoggingDispatcher,
    OutboxDispatcher,
    SideEffectDispatcher,
)
from src.application.waitlist_service import WaitlistService
from src.api.schemas.schemas import (
    BookingRequest,
    BookingResponse,
    CancelRequest,
    CapacityUpdateRequest,
    ExperienceCreate,
    ExperienceResponse,
    GroupBookingRequest,
    GroupBookingResponse,
    OutboxEventResponse,
    ParticipantResponse,
    PaymentSplitResponse,
    ReminderResponse,
    RequesterRequest,
    SlotResponse,
    WaitlistEntryResponse,
    WaitlistExpireResponse,
    WaitlistJoinRequest,
    WaitlistProcessRequest,
    WaitlistProcessResponse,
)
from src.domain.exceptions import (
    AlreadyCancelledError,
    AlreadyWaitingError,
    BookingCoreError,
    CapacityBelowBookedError,
    ConcurrentConflictError,
    GroupTooSmallError,
    IdempotencyConflictError,
    InsufficientCapacityError,
    InvalidQuantityError,
    InvalidStateTransitionError,
    NotFoundError,
    OfferExpiredError,
    PaymentAlreadyRecordedError,
    PaymentVerificationError,
    SlotNotFoundError,
)
from src.domain.value_objects import ParticipantInfo, Payer, SlotRef
from src.infrastructure.db.models import Booking, Slot, WaitlistEntry
from src.infrastructure.payments.stripe_gateway import StripeWebhookVerifier
from src.infrastructure.repositories.outbox_repository import OutboxRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: dict[type[BookingCoreError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    SlotNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidQuantityError: status.HTTP_400_BAD_REQUEST,
    GroupTooSmallError: status.HTTP_400_BAD_REQUEST,
    PaymentVerificationError: status.HTTP_400_BAD_REQUEST,
    OfferExpiredError: status.HTTP_410_GONE,
    InsufficientCapacityError: status.HTTP_409_CONFLICT,
    ConcurrentConflictError: status.HTTP_409_CONFLICT,
    AlreadyCancelledError: status.HTTP_409_CONFLICT,
    AlreadyWaitingError: status.HTTP_409_CONFLICT,
    InvalidStateTransitionError: status.HTTP_409_CONFLICT,
    IdempotencyConflictError: status.HTTP_409_CONFLICT,
    CapacityBelowBookedError: status.HTTP_409_CONFLICT,
    PaymentAlreadyRecordedError: status.HTTP_409_CONFLICT,
}


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_dispatcher(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> SideEffectDispatcher:
    return CompositeDispatcher([LoggingDispatcher(), OutboxDispatcher(session_factory)])


def get_payment_verifier() -> StripeWebhookVerifier:
    return StripeWebhookVerifier()


def _http_error(exc: BookingCoreError) -> HTTPException:
    status_code = status.HTTP_409_CONFLICT
    for error_type in type(exc).__mro__:
        if error_type in _STATUS_BY_ERROR:
            status_code = _STATUS_BY_ERROR[error_type]
            break
    return HTTPException(
        status_code=status_code,
        detail={"error": exc.code, "message": str(exc)},
    )


def _slot_response(slot: Slot) -> SlotResponse:
    return SlotResponse(
        date=slot.date,
        time=slot.time,
        capacity=slot.capacity,
        booked_count=slot.booked_count,
        available=slot.available,
        price_override=slot.price_override,
    )


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        experience_id=booking.experience_id,
        slot_date=booking.slot_date,
        slot_time=booking.slot_time,
        user_id=booking.user_id,
        quantity=booking.quantity,
        unit_price=booking.unit_price,
        total_price=booking.total_price,
        discount_percentage=booking.discount_percentage,
        discount_amount=booking.discount_amount,
        status=booking.status.value,
        payment_status=booking.payment_status.value,
        is_group_booking=booking.is_group_booking,
        participants=[
            ParticipantResponse(
                name=p.name,
                email=p.email,
                phone=p.phone,
                is_organizer=p.is_organizer,
            )
            for p in booking.participants
        ],
        payment_splits=[
            PaymentSplitResponse(
                participant_email=s.participant_email,
                amount=s.amount,
                status=s.status.value,
            )
            for s in booking.payment_splits
        ],
        created_at=booking.created_at,
        cancelled_at=booking.cancelled_at,
    )


def _waitlist_response(entry: WaitlistEntry, position: int | None = None) -> WaitlistEntryResponse:
    return WaitlistEntryResponse(
        waitlist_id=entry.id,
        experience_id=entry.experience_id,
        slot_date=entry.slot_date,
        slot_time=entry.slot_time,
        user_id=entry.user_id,
        quantity=entry.quantity,
        priority=entry.priority,
        status=entry.status.value,
        position=position,
        expires_at=entry.expires_at,
        booking_id=entry.booking_id,
        created_at=entry.created_at,
    )


@router.get("/health")
def health():
    return {"message": "Experience booking core is running"}


# -----------------------------
# Experiences and slots
# -----------------------------
@router.post("/experiences", response_model=ExperienceResponse)
def create_experience(
    request: ExperienceCreate,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = CatalogService(db, dispatcher=dispatcher)
    try:
        experience = service.create_experience(
            title=request.title,
            price=request.price,
            location=request.location,
            slots=[
                SlotSpec(
                    date=slot.date,
                    time=slot.time,
                    capacity=slot.capacity,
                    price_override=slot.price_override,
                )
                for slot in request.slots
            ],
        )
        slots = service.list_slots(experience.id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc

    return ExperienceResponse(
        id=experience.id,
        title=experience.title,
        price=experience.price,
        location=experience.location,
        slots=[_slot_response(slot) for slot in slots],
    )


@router.get("/experiences/{experience_id}", response_model=ExperienceResponse)
def get_experience(experience_id: str, db: Session = Depends(get_db)):
    service = CatalogService(db)
    try:
        experience = service.get_experience(experience_id)
        slots = service.list_slots(experience_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc

    return ExperienceResponse(
        id=experience.id,
        title=experience.title,
        price=experience.price,
        location=experience.location,
        slots=[_slot_response(slot) for slot in slots],
    )


@router.put("/experiences/{experience_id}/slots/capacity", response_model=SlotResponse)
def update_slot_capacity(
    experience_id: str,
    request: CapacityUpdateRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = CatalogService(db, dispatcher=dispatcher)
    try:
        slot = service.adjust_capacity(
            SlotRef(experience_id, request.date, request.time),
            request.capacity,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _slot_response(slot)


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=BookingResponse)
def create_booking(
    request: BookingRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = BookingService(db, dispatcher=dispatcher)

    try:
        booking = service.place_booking(
            slot_ref=SlotRef(request.experience_id, request.slot_date, request.slot_time),
            quantity=request.quantity,
            payer=Payer(request.user_id, request.user_name, request.user_email),
            idempotency_key=request.idempotency_key,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking)


@router.get("/bookings", response_model=list[BookingResponse])
def list_bookings(user_id: str, db: Session = Depends(get_db)):
    service = BookingService(db)
    return [_booking_response(booking) for booking in service.list_bookings(user_id)]


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(booking_id: str, db: Session = Depends(get_db)):
    service = BookingService(db)
    try:
        booking = service.get_booking(booking_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelRequest | None = None,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = BookingService(db, dispatcher=dispatcher)
    try:
        booking = service.cancel_booking(
            booking_id,
            requester_id=request.user_id if request else None,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    verifier: StripeWebhookVerifier = Depends(get_payment_verifier),
):
    payload = await request.body()
    service = BookingService(db)
    try:
        signal = verifier.verify(payload, request.headers.get("Stripe-Signature"))
        if signal is None:
            return {"received": True}
        booking = service.record_payment(
            booking_id=signal.booking_id,
            provider=signal.provider,
            payment_id=signal.payment_id,
            payload_hash=signal.payload_hash,
            participant_email=signal.participant_email,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc

    return {
        "received": True,
        "booking_id": booking.id,
        "payment_status": booking.payment_status.value,
    }


# -----------------------------
# Waitlist
# -----------------------------
@router.post("/waitlist", response_model=WaitlistEntryResponse)
def join_waitlist(
    request: WaitlistJoinRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = WaitlistService(db, dispatcher=dispatcher)
    try:
        entry = service.join(
            slot_ref=SlotRef(request.experience_id, request.slot_date, request.slot_time),
            quantity=request.quantity,
            requester=Payer(request.user_id, request.user_name, request.user_email),
            priority=request.priority,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _waitlist_response(entry, service.position(entry))


@router.get("/waitlist", response_model=list[WaitlistEntryResponse])
def list_waitlist(user_id: str, db: Session = Depends(get_db)):
    service = WaitlistService(db)
    return [
        _waitlist_response(entry, service.position(entry))
        for entry in service.list_entries(user_id)
    ]


@router.post("/waitlist/process", response_model=WaitlistProcessResponse)
def process_waitlist(
    request: WaitlistProcessRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = WaitlistService(db, dispatcher=dispatcher)
    try:
        offered = service.promote(
            SlotRef(request.experience_id, request.slot_date, request.slot_time),
            request.available_seats,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return WaitlistProcessResponse(
        processed=len(offered),
        offered=[_waitlist_response(entry) for entry in offered],
    )


@router.post("/waitlist/expire", response_model=WaitlistExpireResponse)
def expire_waitlist_offers(
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = WaitlistService(db, dispatcher=dispatcher)
    return WaitlistExpireResponse(expired=len(service.expire_offers()))


@router.get("/waitlist/{waitlist_id}", response_model=WaitlistEntryResponse)
def get_waitlist_entry(waitlist_id: str, db: Session = Depends(get_db)):
    service = WaitlistService(db)
    try:
        entry = service.get_entry(waitlist_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _waitlist_response(entry, service.position(entry))


@router.delete("/waitlist/{waitlist_id}")
def leave_waitlist(waitlist_id: str, user_id: str, db: Session = Depends(get_db)):
    service = WaitlistService(db)
    try:
        service.leave(waitlist_id, user_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return {"message": "Removed from waitlist"}


@router.post("/waitlist/{waitlist_id}/accept", response_model=BookingResponse)
def accept_waitlist_offer(
    waitlist_id: str,
    request: RequesterRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = WaitlistService(db, dispatcher=dispatcher)
    try:
        booking = service.accept(waitlist_id, request.user_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/waitlist/{waitlist_id}/decline", response_model=WaitlistEntryResponse)
def decline_waitlist_offer(
    waitlist_id: str,
    request: RequesterRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = WaitlistService(db, dispatcher=dispatcher)
    try:
        entry = service.decline(waitlist_id, request.user_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _waitlist_response(entry)


# -----------------------------
# Group bookings
# -----------------------------
@router.post("/group-bookings", response_model=GroupBookingResponse)
def create_group_booking(
    request: GroupBookingRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    slot_ref = SlotRef(request.experience_id, request.slot_date, request.slot_time)
    participants = [
        ParticipantInfo(name=p.name, email=p.email, phone=p.phone)
        for p in request.participants
    ]
    booking_service = BookingService(db, dispatcher=dispatcher)

    try:
        if len(participants) < MIN_GROUP_SIZE:
            # A party of one is an ordinary booking.
            solo = participants[0]
            booking = booking_service.place_booking(
                slot_ref=slot_ref,
                quantity=1,
                payer=Payer(request.user_id, solo.name, solo.email),
            )
            return GroupBookingResponse(
                booking=_booking_response(booking),
                discount_applied=0,
                total_saved=booking.discount_amount,
            )

        service = GroupBookingService(db, dispatcher=dispatcher, booking_service=booking_service)
        booking, quote = service.create_group_booking(
            slot_ref=slot_ref,
            participants=participants,
            organizer_id=request.user_id,
            payment_method=request.payment_method,
        )
    except BookingCoreError as exc:
        raise _http_error(exc) from exc

    return GroupBookingResponse(
        booking=_booking_response(booking),
        discount_applied=quote.discount_percentage,
        total_saved=quote.discount_amount,
    )


@router.get("/group-bookings", response_model=list[BookingResponse])
def list_group_bookings(user_id: str, db: Session = Depends(get_db)):
    service = GroupBookingService(db)
    return [_booking_response(booking) for booking in service.list_group_bookings(user_id)]


@router.post("/group-bookings/{booking_id}/invite", response_model=ReminderResponse)
def send_group_payment_reminders(
    booking_id: str,
    request: RequesterRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = GroupBookingService(db, dispatcher=dispatcher)
    try:
        reminded = service.send_payment_reminders(booking_id, request.user_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return ReminderResponse(
        reminded=reminded,
        message=f"Payment reminders sent to {reminded} participants",
    )


@router.post("/group-bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_group_booking(
    booking_id: str,
    request: RequesterRequest,
    db: Session = Depends(get_db),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    service = GroupBookingService(db, dispatcher=dispatcher)
    try:
        booking = service.cancel_group_booking(booking_id, request.user_id)
    except BookingCoreError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


# -----------------------------
# Outbox
# -----------------------------
@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    events = OutboxRepository(db).list_events(status_filter=status_filter, limit=limit)
    return [
        OutboxEventResponse(
            id=item.id,
            aggregate_type=item.aggregate_type,
            aggregate_id=item.aggregate_id,
            event_type=item.event_type,
            status=item.status,
            attempts=item.attempts,
            created_at=item.created_at.isoformat(),
        )
        for item in events
    ]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
):
    repository = OutboxRepository(db)
    item = repository.get_by_id(event_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Outbox event not found",
        )

    repository.mark_published(item)
    return OutboxEventResponse(
        id=item.id,
        aggregate_type=item.aggregate_type,
        aggregate_id=item.aggregate_id,
        event_type=item.event_type,
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )
