"""FastAPI dependency providers for the booking services."""

from functools import lru_cache

from booking.services.appointment_service import AppointmentService
from booking.services.notification_service import NotificationService
from database.connection import get_document_store


@lru_cache
def get_appointment_service() -> AppointmentService:
    return AppointmentService(get_document_store())


def get_notification_service() -> NotificationService:
    return get_appointment_service().notification_service
