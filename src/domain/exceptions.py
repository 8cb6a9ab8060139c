

class BookingCoreError(Exception):
    """
    Base exception for all domain-level errors
    inside the booking core.
    """

    code = "BookingCoreError"


class NotFoundError(BookingCoreError):
    """Raised when a booking, experience or waitlist entry does not exist."""

    code = "NotFound"


class SlotNotFoundError(BookingCoreError):
    """Raised when a slot reference does not resolve. Not a capacity issue."""

    code = "SlotNotFound"

    def __init__(self, experience_id: str, date: str, time: str):
        self.experience_id = experience_id
        self.date = date
        self.time = time
        super().__init__(
            f"Slot {date} {time} not found for experience {experience_id}"
        )


class InvalidQuantityError(BookingCoreError, ValueError):
    code = "InvalidQuantity"


class InsufficientCapacityError(BookingCoreError):
    """Raised by the pre-check when the slot clearly has no room."""

    code = "InsufficientCapacity"

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"No seats left: requested {requested}, available {available}"
        )


class ConcurrentConflictError(BookingCoreError):
    """
    Raised when the atomic conditional write affected zero rows,
    i.e. another request won the race for the remaining capacity.
    """

    code = "ConcurrentConflict"

    def __init__(self, message: str = "Lost a race for the remaining seats, please retry"):
        super().__init__(message)


class InvalidStateTransitionError(BookingCoreError):
    """
    Raised when an illegal state transition is attempted.
    """

    code = "InvalidStateTransition"

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class AlreadyCancelledError(BookingCoreError):
    code = "AlreadyCancelled"


class AlreadyWaitingError(BookingCoreError):
    code = "AlreadyWaiting"


class OfferExpiredError(BookingCoreError):
    code = "Expired"


class IdempotencyConflictError(BookingCoreError):
    """Raised when an idempotent request conflicts with previous data."""

    code = "IdempotencyConflict"


class GroupTooSmallError(BookingCoreError, ValueError):
    code = "GroupTooSmall"


class CapacityBelowBookedError(BookingCoreError):
    code = "CapacityBelowBooked"


class PaymentVerificationError(BookingCoreError):
    code = "PaymentVerificationFailed"


class PaymentAlreadyRecordedError(BookingCoreError):
    code = "PaymentAlreadyRecorded"
