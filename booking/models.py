"""
Canonical view models for the booking layer.

- Appointment: one normalized appointment, whatever shape its record was
  written in. Produced by the AppointmentMapper.
- ServiceStylistPair / HistoryEntry: nested parts of an Appointment.
- ServiceInfo / BranchInfo: resolved related entities.
- Notification: in-app notification record.

Field names are snake_case in Python and serialize to camelCase, the naming
the mobile clients consume.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from database.models import AppointmentStatus, NotificationType, OwnerRole


class CamelModel(BaseModel):
    """Base model serializing to camelCase while accepting either spelling."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ServiceStylistPair(CamelModel):
    """One booked service and the stylist performing it."""

    service_id: str = ""
    service_name: str = ""
    service_price: float = 0.0
    stylist_id: str = ""
    stylist_name: str = ""


class HistoryEntry(CamelModel):
    """
    One entry of an appointment's append-only history.

    Diff fields vary by action (oldDate/newDate for reschedules,
    fromStatus/toStatus for status changes) and are kept as extras.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    action: str
    timestamp: str


class ServiceInfo(CamelModel):
    id: str
    name: str = ""
    description: str = ""
    price: float | None = None
    duration: int | None = None
    category: str = ""


class BranchInfo(CamelModel):
    """Branch details. A placeholder carries only the id."""

    id: str
    name: str | None = None
    address: Any = None
    phone: str | None = None
    email: str | None = None


class Appointment(CamelModel):
    """Canonical appointment view model."""

    id: str
    client_id: str = ""
    primary_stylist_id: str = ""
    primary_service_id: str = ""
    branch_id: str = ""

    date: str = ""
    time: str = ""
    end_time: str = ""
    duration_minutes: int = 60
    status: AppointmentStatus = AppointmentStatus.PENDING

    price: float = 0.0
    discount: float | None = None
    final_price: float = 0.0
    payment_status: str | None = None
    payment_method: str | None = None

    service_stylist_pairs: list[ServiceStylistPair] = Field(default_factory=list)
    history: list[HistoryEntry] = Field(default_factory=list)

    notes: str | None = None
    cancellation_reason: str | None = None

    # Denormalized display fields
    client_name: str = ""
    client_phone: str = ""
    client_email: str = ""
    client_allergies: str = ""
    stylist_name: str = ""
    branch_name: str = ""

    service: ServiceInfo | None = None
    branch: BranchInfo | None = None

    created_at: str | None = None
    updated_at: str | None = None


class Notification(CamelModel):
    """In-app notification."""

    id: str
    recipient_id: str
    recipient_role: OwnerRole | None = None
    type: NotificationType = NotificationType.GENERAL
    title: str = ""
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    created_at: str | None = None
    read_at: str | None = None
