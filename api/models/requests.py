"""Pydantic models for appointment API request bodies."""

from pydantic import field_validator

from booking.models import CamelModel


class CancelRequest(CamelModel):
    reason: str
    actor: str | None = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """A cancellation must say why."""
        if not v.strip():
            raise ValueError("Cancellation reason must not be empty")
        return v.strip()


class RescheduleRequest(CamelModel):
    """New slot for an appointment (date YYYY-MM-DD, time HH:mm)."""

    new_date: str
    new_time: str
    notes: str | None = None
    actor: str | None = None

    @field_validator("new_date")
    @classmethod
    def validate_date(cls, v: str) -> str:
        parts = v.split("-")
        if len(parts) != 3 or not all(part.isdigit() for part in parts):
            raise ValueError(f"Invalid date format: {v}")
        return v

    @field_validator("new_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        parts = v.split(":")
        if len(parts) < 2 or not all(part.isdigit() for part in parts[:2]):
            raise ValueError(f"Invalid time format: {v}")
        return v


class PaymentRequest(CamelModel):
    payment_method: str
    transaction_id: str | None = None
