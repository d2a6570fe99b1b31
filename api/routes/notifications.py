"""API routes for in-app notifications."""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_appointment_service, get_notification_service
from booking.models import Notification
from booking.services.appointment_service import AppointmentService
from booking.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

Service = Annotated[NotificationService, Depends(get_notification_service)]
Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
RecipientId = Annotated[str, Query(alias="recipientId", min_length=1)]


@router.get("")
async def list_notifications(recipient_id: RecipientId, service: Service) -> list[Notification]:
    """List a user's notifications, newest first."""
    return await service.get_user_notifications(recipient_id)


@router.get("/unread-count")
async def unread_count(recipient_id: RecipientId, service: Service) -> dict[str, int]:
    return {"unread": await service.get_unread_count(recipient_id)}


@router.post("/read-all")
async def mark_all_read(recipient_id: RecipientId, appointments: Appointments) -> dict[str, int]:
    return {"updated": await appointments.mark_all_read(recipient_id)}


@router.post("/local/drain")
async def drain_local_notifications(
    recipient_id: RecipientId, appointments: Appointments
) -> list[dict[str, Any]]:
    """
    Collect the local notifications queued for a connected session.

    Each entry is returned once; the client shows them on-device.
    """
    return [
        {
            "title": n.title,
            "body": n.body,
            "data": n.data,
            "queuedAt": n.queued_at.isoformat(),
        }
        for n in appointments.drain_local_notifications(recipient_id)
    ]


@router.post("/{notification_id}/read", status_code=204)
async def mark_read(notification_id: str, appointments: Appointments) -> None:
    await appointments.mark_notification_read(notification_id)


@router.delete("/{notification_id}", status_code=204)
async def delete_notification(notification_id: str, service: Service) -> None:
    await service.delete_notification(notification_id)


@router.delete("")
async def delete_all_notifications(recipient_id: RecipientId, service: Service) -> dict[str, int]:
    return {"deleted": await service.delete_all_notifications(recipient_id)}
