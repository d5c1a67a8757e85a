"""Booking state machine.

Canonical chain: Pending → Confirmed → Active → Completed.
Cancelled is reachable from every non-terminal status.
Completed and Cancelled are terminal.
"""

from enum import Enum

from rentflow.core.exceptions import InvalidTransition, TerminalState


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @classmethod
    def _missing_(cls, value):
        # Backend payloads are not consistent about casing
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


FORWARD_CHAIN: dict[BookingStatus, BookingStatus | None] = {
    BookingStatus.PENDING: BookingStatus.CONFIRMED,
    BookingStatus.CONFIRMED: BookingStatus.ACTIVE,
    BookingStatus.ACTIVE: BookingStatus.COMPLETED,
    BookingStatus.COMPLETED: None,
    BookingStatus.CANCELLED: None,
}

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.ACTIVE, BookingStatus.CANCELLED},
    BookingStatus.ACTIVE: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

# Ordering used to check that realized sequences never move backwards
STATUS_RANK: dict[BookingStatus, int] = {
    BookingStatus.PENDING: 0,
    BookingStatus.CONFIRMED: 1,
    BookingStatus.ACTIVE: 2,
    BookingStatus.COMPLETED: 3,
}


def is_terminal(status: BookingStatus | str) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def next_legal_status(current: BookingStatus | str) -> BookingStatus | None:
    """Return the single forward successor, or None for terminal statuses."""
    return FORWARD_CHAIN[BookingStatus(current)]


def is_legal_transition(current: BookingStatus | str, target: BookingStatus | str) -> bool:
    current = BookingStatus(current)
    target = BookingStatus(target)
    if target == next_legal_status(current):
        return True
    return target == BookingStatus.CANCELLED and current not in TERMINAL_STATUSES


def assert_booking_transition(current: BookingStatus | str, target: BookingStatus | str) -> None:
    """Raise unless current → target is a legal step.

    Raises:
        TerminalState: current is Completed/Cancelled and target differs
        InvalidTransition: any other illegal request
    """
    current = BookingStatus(current)
    target = BookingStatus(target)
    if current in TERMINAL_STATUSES and target != current:
        raise TerminalState(current.value, target.value)
    if not is_legal_transition(current, target):
        raise InvalidTransition(current.value, target.value)


class StatusTransitionEngine:
    """Single source of truth for what counts as progress. No I/O."""

    next_legal_status = staticmethod(next_legal_status)
    is_legal_transition = staticmethod(is_legal_transition)
    validate = staticmethod(assert_booking_transition)
    is_terminal = staticmethod(is_terminal)


status_engine = StatusTransitionEngine()
