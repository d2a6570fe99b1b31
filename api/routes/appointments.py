"""
API routes for appointments.

Thin HTTP layer over AppointmentService. Service errors are translated by
the exception handlers registered in api.main:
- AppointmentNotFoundError -> 404
- InvalidStatusTransitionError -> 409
"""

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query

from api.dependencies import get_appointment_service
from api.models.requests import CancelRequest, PaymentRequest, RescheduleRequest
from booking.models import Appointment
from booking.services.appointment_service import AppointmentService
from database.models import OwnerRole

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["appointments"])

Service = Annotated[AppointmentService, Depends(get_appointment_service)]


@router.get("")
async def list_appointments(
    service: Service,
    owner_id: Annotated[str, Query(alias="ownerId", min_length=1)],
    role: Annotated[OwnerRole, Query()] = OwnerRole.CLIENT,
) -> list[Appointment]:
    """
    List a client's or stylist's appointments, newest first.

    **Parameters:**
    - **ownerId**: Client or stylist user id
    - **role**: `client` (default) or `stylist`
    """
    return await service.get_appointments(owner_id, role)


@router.get("/{appointment_id}")
async def get_appointment(appointment_id: str, service: Service) -> Appointment:
    return await service.get_appointment(appointment_id)


@router.post("", status_code=201)
async def create_appointment(
    service: Service,
    data: Annotated[dict[str, Any], Body()],
    walk_in: Annotated[bool, Query(alias="walkIn")] = False,
) -> dict[str, str]:
    """
    Create an appointment from a raw appointment body.

    Every assigned stylist is notified (walk-in notification when ``walkIn``
    is set).

    **Returns:** `{"id": "<appointment id>"}`
    """
    appointment_id = await service.create_appointment(data, walk_in=walk_in)
    return {"id": appointment_id}


@router.patch("/{appointment_id}")
async def update_appointment(
    appointment_id: str,
    service: Service,
    patch: Annotated[dict[str, Any], Body()],
    actor: Annotated[str | None, Query()] = None,
) -> Appointment:
    """
    Patch an appointment. A ``status`` field is checked against the lifecycle.

    **Errors:**
    - **404**: Appointment not found
    - **409**: Status change not allowed
    """
    await service.update_appointment(appointment_id, patch, actor=actor)
    return await service.get_appointment(appointment_id)


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: str, request: CancelRequest, service: Service
) -> Appointment:
    await service.cancel_appointment(appointment_id, request.reason, actor=request.actor)
    return await service.get_appointment(appointment_id)


@router.post("/{appointment_id}/reschedule")
async def reschedule_appointment(
    appointment_id: str, request: RescheduleRequest, service: Service
) -> Appointment:
    await service.reschedule_appointment(
        appointment_id,
        request.new_date,
        request.new_time,
        notes=request.notes,
        actor=request.actor,
    )
    return await service.get_appointment(appointment_id)


@router.post("/{appointment_id}/payment")
async def record_payment(
    appointment_id: str, request: PaymentRequest, service: Service
) -> Appointment:
    await service.record_payment(
        appointment_id, request.payment_method, transaction_id=request.transaction_id
    )
    return await service.get_appointment(appointment_id)
