"""
Raw appointment record variants.

Appointment documents were written by three generations of clients:

- legacy_direct: one service and one stylist referenced by ``serviceId`` /
  ``stylistId`` fields on the record itself.
- legacy_array: receptionist-era records with a ``services`` array (embedded
  service entries) and a ``stylists`` array (service -> stylist assignments).
- pairs: current records with a ``serviceStylistPairs`` array.

parse_raw_record() tags each document with exactly one variant. Every field
is optional; the variant only decides where the primary stylist and service
come from. All other fallbacks live in the mapper.
"""

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from database.document_store import StoreDocument


class _RawModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class RawServiceEntry(_RawModel):
    """Embedded service entry of a ``services`` array."""

    id: str | None = None
    name: str | None = None
    description: str | None = None
    price: float | None = None
    duration: int | None = None
    category: str | None = None
    category_id: str | None = None


class RawStylistEntry(_RawModel):
    """Entry of a legacy ``stylists`` array."""

    service_id: str | None = None
    service_name: str | None = None
    stylist_id: str | None = None
    stylist_name: str | None = None


class RawPairEntry(_RawModel):
    """Entry of a ``serviceStylistPairs`` array."""

    service_id: str | None = None
    service_name: str | None = None
    service_price: float | None = None
    stylist_id: str | None = None
    stylist_name: str | None = None


class RawClientInfo(_RawModel):
    id: str | None = None
    name: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    allergies: Any = None


class RawAppointment(_RawModel):
    """Fields any appointment record may carry."""

    kind: ClassVar[str] = "unknown"

    id: str

    # Ownership
    client_id: str | None = None
    uid: str | None = None
    user_id: str | None = None
    stylist_id: str | None = None
    service_id: str | None = None
    branch_id: str | None = None

    # Schedule
    date: Any = None
    appointment_date: Any = None
    scheduled_date: Any = None
    time: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    duration: int | None = None
    status: str | None = None

    # Money
    price: float | None = None
    total_price: float | None = None
    total_cost: float | None = None
    discount: float | None = None
    final_price: float | None = None
    payment_status: str | None = None
    payment_method: str | None = None

    # Embedded client details
    client_info: RawClientInfo | None = None
    client_name: str | None = None
    client_first_name: str | None = None
    client_last_name: str | None = None
    client_phone: str | None = None
    client_email: str | None = None

    services: list[RawServiceEntry] = Field(default_factory=list)
    stylists: list[RawStylistEntry] = Field(default_factory=list)
    service_stylist_pairs: list[RawPairEntry] = Field(default_factory=list)

    history: list[dict[str, Any]] = Field(default_factory=list)
    notes: str | None = None
    cancellation_reason: str | None = None
    created_at: Any = None
    updated_at: Any = None

    @property
    def owner_client_id(self) -> str:
        return self.client_id or self.uid or self.user_id or ""

    def primary_stylist_id(self) -> str:
        return ""

    def primary_service_id(self) -> str:
        return ""


class PairsRecord(RawAppointment):
    kind: ClassVar[str] = "pairs"

    def primary_stylist_id(self) -> str:
        return self.service_stylist_pairs[0].stylist_id or ""

    def primary_service_id(self) -> str:
        return self.service_stylist_pairs[0].service_id or ""


class LegacyArrayRecord(RawAppointment):
    kind: ClassVar[str] = "legacy_array"

    def primary_stylist_id(self) -> str:
        if self.stylists:
            return self.stylists[0].stylist_id or ""
        return self.stylist_id or ""

    def primary_service_id(self) -> str:
        if self.services:
            return self.services[0].id or ""
        return self.service_id or ""


class LegacyDirectRecord(RawAppointment):
    kind: ClassVar[str] = "legacy_direct"

    def primary_stylist_id(self) -> str:
        return self.stylist_id or ""

    def primary_service_id(self) -> str:
        return self.service_id or ""


def classify(data: dict[str, Any]) -> type[RawAppointment]:
    """Pick the variant for a raw document body. Pairs win over legacy arrays."""
    if data.get("serviceStylistPairs"):
        return PairsRecord
    if data.get("services") or data.get("stylists"):
        return LegacyArrayRecord
    return LegacyDirectRecord


def parse_raw_record(doc: StoreDocument) -> RawAppointment:
    """
    Parse a stored appointment into its tagged variant.

    Raises:
        pydantic.ValidationError: If a present field has an unusable value
    """
    variant = classify(doc.data)
    body = {k: v for k, v in doc.data.items() if v is not None}
    body["id"] = doc.id
    return variant.model_validate(body)
