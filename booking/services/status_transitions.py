"""
Appointment status state machine.

    pending -> scheduled -> confirmed -> in_progress -> completed

Forward moves may skip steps (a front-desk booking is often created already
confirmed). ``cancelled`` and ``no_show`` are reachable from every
non-terminal state. ``completed``, ``cancelled`` and ``no_show`` are
terminal. Writing the current status again is allowed and is a no-op for
notifications.

A reschedule is not a status: it moves the appointment back to
``scheduled`` and records the move in the history log.
"""

import logging
from typing import Any, Iterable

from booking.services.notification_dispatcher import DispatchEvent
from database.models import AppointmentStatus

logger = logging.getLogger(__name__)

LIFECYCLE = (
    AppointmentStatus.PENDING,
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.IN_PROGRESS,
    AppointmentStatus.COMPLETED,
)

TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

RESCHEDULABLE_STATUSES = frozenset({
    AppointmentStatus.PENDING,
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CONFIRMED,
})

# Spellings written by older clients
LEGACY_STATUS_ALIASES = {
    "in_service": AppointmentStatus.IN_PROGRESS,
    "in service": AppointmentStatus.IN_PROGRESS,
    "in-progress": AppointmentStatus.IN_PROGRESS,
    "rescheduled": AppointmentStatus.SCHEDULED,
    "canceled": AppointmentStatus.CANCELLED,
    "noshow": AppointmentStatus.NO_SHOW,
    "no-show": AppointmentStatus.NO_SHOW,
    "done": AppointmentStatus.COMPLETED,
    "paid": AppointmentStatus.COMPLETED,
}

# Status changes that notify the client (only when the status actually changes)
STATUS_CHANGE_EVENTS = {
    AppointmentStatus.CONFIRMED: DispatchEvent.CONFIRMED,
    AppointmentStatus.IN_PROGRESS: DispatchEvent.IN_SERVICE,
    AppointmentStatus.COMPLETED: DispatchEvent.COMPLETED,
}


class InvalidStatusTransitionError(Exception):
    """Raised when a status write would break the lifecycle."""

    def __init__(self, current: Any, requested: Any, reason: str = ""):
        message = f"Cannot move appointment from '{current}' to '{requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.current = current
        self.requested = requested


def normalize_status(value: Any) -> AppointmentStatus | None:
    """Map a stored status (including legacy spellings) to AppointmentStatus."""
    if value is None:
        return None
    if isinstance(value, AppointmentStatus):
        return value

    text = str(value).strip().lower()
    try:
        return AppointmentStatus(text)
    except ValueError:
        return LEGACY_STATUS_ALIASES.get(text)


def is_terminal(status: AppointmentStatus) -> bool:
    return status in TERMINAL_STATUSES


def stored_spellings(statuses: Iterable[AppointmentStatus]) -> list[str]:
    """Every stored value (canonical or legacy alias) that normalizes to one of ``statuses``."""
    wanted = set(statuses)
    spellings = [status.value for status in AppointmentStatus if status in wanted]
    spellings += [alias for alias, status in LEGACY_STATUS_ALIASES.items() if status in wanted]
    return spellings


def validate_transition(current: AppointmentStatus | None, requested: Any) -> AppointmentStatus:
    """
    Check a requested status against the lifecycle.

    Args:
        current: Stored status (None for records that never had one)
        requested: Requested status value

    Returns:
        The requested status as AppointmentStatus

    Raises:
        InvalidStatusTransitionError: Unknown status, a write out of a terminal
            state, or a backwards move along the lifecycle
    """
    target = normalize_status(requested)
    if target is None:
        raise InvalidStatusTransitionError(current, requested, "unknown status")

    if current is None or current == target:
        return target

    if is_terminal(current):
        raise InvalidStatusTransitionError(current, target, "appointment is already closed")

    if target in (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW):
        return target

    if LIFECYCLE.index(target) < LIFECYCLE.index(current):
        raise InvalidStatusTransitionError(current, target, "status cannot move backwards")

    return target


def status_change_event(
    previous: AppointmentStatus | None, new: AppointmentStatus
) -> DispatchEvent | None:
    """
    Event to dispatch for a status write, or None.

    Idempotent writes never dispatch. Cancellation is handled by the caller,
    which always dispatches it.
    """
    if previous == new:
        return None
    return STATUS_CHANGE_EVENTS.get(new)
