"""
SQLAlchemy ORM models and shared enumerations.

The booking data lives in a document-shaped store: every collection
(appointments, services, users, branches, notifications) is persisted in the
single ``documents`` table, keyed by (collection, id), with the record body
kept as JSONB. Field names inside ``data`` are the camelCase names written by
the mobile and receptionist clients over the years, which is why the booking
layer reads them through tolerant adapters instead of fixed columns.

All models use:
- TIMESTAMP WITH TIME ZONE for datetime fields
- JSONB for the document body, with a GIN index for containment filters
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import TIMESTAMP, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# ============================================================================
# Base Class
# ============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


# ============================================================================
# Enums
# ============================================================================


class AppointmentStatus(str, PyEnum):
    """Appointment lifecycle status."""

    PENDING = "pending"
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"

    def __str__(self):
        return self.value


class OwnerRole(str, PyEnum):
    """Role of the user whose appointments are being listed."""

    CLIENT = "client"
    STYLIST = "stylist"


class NotificationType(str, PyEnum):
    """Type of in-app notification."""

    # Appointment lifecycle
    APPOINTMENT_CREATED = "appointment_created"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_CONFIRMED = "appointment_confirmed"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    APPOINTMENT_REMINDER = "appointment_reminder"
    APPOINTMENT_IN_SERVICE = "appointment_in_service"
    APPOINTMENT_COMPLETED = "appointment_completed"

    # Front desk
    WALK_IN_CLIENT = "walk_in_client"
    TRANSACTION_PAID = "transaction_paid"

    GENERAL = "general"


# ============================================================================
# Document Table
# ============================================================================


class Document(Base):
    """
    Document model - One record of one collection.

    ``id`` is unique per collection only; the same id may exist in two
    collections (e.g. a user and the notifications they own are unrelated).
    """

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(100), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    data: Mapped[dict[str, Any]] = mapped_column(
        JSONB, nullable=False, server_default=text("'{}'::jsonb")
    )

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_documents_collection", "collection"),
        Index("idx_documents_data_gin", "data", postgresql_using="gin"),
    )

    def __repr__(self) -> str:
        return f"<Document(collection='{self.collection}', id='{self.id}')>"
