# src/domain/state_machine.py

from enum import Enum
from typing import Dict, Set, Type

from src.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    OFFERED = "offered"
    BOOKED = "booked"
    EXPIRED = "expired"


class StateMachine:
    """
    Central lifecycle controller.
    Subclasses declare the status enum and the legal transitions.
    """

    _status_type: Type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status, to_status) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status, to_status) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status) -> bool:
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status) -> None:
        if not isinstance(status, cls._status_type):
            raise TypeError(
                f"Expected {cls._status_type.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    """Bookings are never deleted; cancelled and completed are terminal."""

    _status_type = BookingStatus
    _ALLOWED_TRANSITIONS = {
        BookingStatus.CONFIRMED: {
            BookingStatus.CANCELLED,
            BookingStatus.COMPLETED,
        },
        BookingStatus.CANCELLED: set(),
        BookingStatus.COMPLETED: set(),
    }


class PaymentStateMachine(StateMachine):
    _status_type = PaymentStatus
    _ALLOWED_TRANSITIONS = {
        PaymentStatus.PENDING: {
            PaymentStatus.PAID,
        },
        PaymentStatus.PAID: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.REFUNDED: set(),
    }


class WaitlistStateMachine(StateMachine):
    """
    waiting -> offered -> {booked | expired}.
    A user must create a new entry to re-join after a terminal state.
    """

    _status_type = WaitlistStatus
    _ALLOWED_TRANSITIONS = {
        WaitlistStatus.WAITING: {
            WaitlistStatus.OFFERED,
        },
        WaitlistStatus.OFFERED: {
            WaitlistStatus.BOOKED,
            WaitlistStatus.EXPIRED,
        },
        WaitlistStatus.BOOKED: set(),
        WaitlistStatus.EXPIRED: set(),
    }
