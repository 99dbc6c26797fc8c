"""Booking status transitions.

PENDING -> CONFIRMED -> IN_PROGRESS -> COMPLETED -> DISPUTED
PENDING -> REJECTED
CONFIRMED | IN_PROGRESS -> CANCELLED
"""

from .constants import BookingStatus

_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.REJECTED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset({BookingStatus.DISPUTED}),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.DISPUTED: frozenset(),
}

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.REJECTED})


def valid_transitions(status: BookingStatus) -> frozenset[BookingStatus]:
    return _TRANSITIONS[BookingStatus(status)]


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return BookingStatus(target) in valid_transitions(current)


def sources_for(target: BookingStatus) -> tuple[BookingStatus, ...]:
    """Statuses a booking may be in for a move to ``target``."""
    return tuple(s for s, targets in _TRANSITIONS.items() if target in targets)


def is_terminal(status: BookingStatus) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES
