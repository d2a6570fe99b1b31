"""
Booking services module.

Services:
- appointment_query_service: Union of ownership queries with fallback scan
- appointment_mapper: Raw records -> canonical Appointment
- live_sync_service: Live, sorted appointment lists per owner
- notification_dispatcher: Multi-channel event delivery
- notification_service: In-app notification records
- appointment_service: Caller-facing appointment operations
"""

from booking.services.appointment_service import (
    AppointmentNotFoundError,
    AppointmentService,
)
from booking.services.notification_dispatcher import (
    DispatchContext,
    DispatchError,
    DispatchEvent,
    NotificationDispatcher,
)
from booking.services.notification_service import NotificationService
from booking.services.status_transitions import InvalidStatusTransitionError

__all__ = [
    "AppointmentNotFoundError",
    "AppointmentService",
    "DispatchContext",
    "DispatchError",
    "DispatchEvent",
    "InvalidStatusTransitionError",
    "NotificationDispatcher",
    "NotificationService",
]
