"""
Canonical appointment mapper.

Folds a raw appointment record (any of the three historical shapes) and its
referenced stylist, service, branch and client records into one Appointment.

Resolution order (each step only when the previous source is absent):
- Primary stylist/service id: per record variant (pairs first entry, legacy
  arrays first entry, legacy direct fields)
- Stylist name: users/{primaryStylistId} profile, else placeholder
- Service: services/{primaryServiceId}, else first ``services`` entry, else None
- Branch: branches/{branchId}, else placeholder carrying only the id
- Client contact: users/{clientId} profile, else clientInfo / clientName fields
- Price: sum(services[].price), sum(pairs[].servicePrice), totalPrice,
  fetched service price, totalCost, price, 0
- Duration: fetched service duration, first ``services`` entry, default

Secondary lookups are cached per mapping call so a batch reads each related
record once. A failing lookup falls back as if the record did not exist.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from booking.formatting import add_minutes, normalize_date, normalize_time
from booking.models import (
    Appointment,
    BranchInfo,
    HistoryEntry,
    ServiceInfo,
    ServiceStylistPair,
)
from booking.raw_records import (
    LegacyArrayRecord,
    RawAppointment,
    parse_raw_record,
)
from booking.services.status_transitions import normalize_status
from database.document_store import (
    BRANCHES,
    SERVICES,
    USERS,
    DocumentStore,
    StoreDocument,
)
from database.models import AppointmentStatus
from shared.config import get_settings

logger = logging.getLogger(__name__)

LookupCache = dict[tuple[str, str], dict[str, Any] | None]


@dataclass
class RelatedEntities:
    """Pre-fetched related records; any that are set skip the store lookup."""

    stylist: dict[str, Any] | None = None
    service: dict[str, Any] | None = None
    branch: dict[str, Any] | None = None
    client: dict[str, Any] | None = None


@dataclass
class ClientContact:
    name: str = ""
    phone: str = ""
    email: str = ""
    allergies: str = ""


def profile_name(profile: dict[str, Any]) -> str:
    """Display name of a users record: ``name`` or first + last name."""
    if profile.get("name"):
        return str(profile["name"])
    first = profile.get("firstName") or ""
    last = profile.get("lastName") or ""
    return f"{first} {last}".strip()


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(item) for item in value if item)
    return str(value)


def _timestamp(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def resolve_price(raw: RawAppointment, fetched_service: dict[str, Any] | None) -> float:
    """Total price by the fixed source precedence."""
    if raw.services:
        return float(sum(entry.price or 0 for entry in raw.services))
    if raw.service_stylist_pairs:
        return float(sum(pair.service_price or 0 for pair in raw.service_stylist_pairs))
    if raw.total_price is not None:
        return float(raw.total_price)
    if fetched_service and fetched_service.get("price") is not None:
        return float(fetched_service["price"])
    if raw.total_cost is not None:
        return float(raw.total_cost)
    if raw.price is not None:
        return float(raw.price)
    return 0.0


def resolve_duration(
    raw: RawAppointment, fetched_service: dict[str, Any] | None, default: int
) -> int:
    if fetched_service and fetched_service.get("duration"):
        return int(fetched_service["duration"])
    if raw.services and raw.services[0].duration:
        return int(raw.services[0].duration)
    return default


def build_pairs(raw: RawAppointment) -> list[ServiceStylistPair]:
    """Service/stylist pairs, synthesized from the legacy arrays when needed."""
    if raw.service_stylist_pairs:
        return [
            ServiceStylistPair(
                service_id=pair.service_id or "",
                service_name=pair.service_name or "",
                service_price=pair.service_price or 0.0,
                stylist_id=pair.stylist_id or "",
                stylist_name=pair.stylist_name or "",
            )
            for pair in raw.service_stylist_pairs
        ]

    if isinstance(raw, LegacyArrayRecord) and raw.stylists:
        services = {entry.id: entry for entry in raw.services if entry.id}
        pairs = []
        for assignment in raw.stylists:
            service = services.get(assignment.service_id)
            pairs.append(
                ServiceStylistPair(
                    service_id=assignment.service_id or "",
                    service_name=assignment.service_name or (service.name if service else "") or "",
                    service_price=(service.price if service else None) or 0.0,
                    stylist_id=assignment.stylist_id or "",
                    stylist_name=assignment.stylist_name or "",
                )
            )
        return pairs

    return []


def build_history(raw: RawAppointment) -> list[HistoryEntry]:
    entries = []
    for item in raw.history:
        if not isinstance(item, dict):
            continue
        entries.append(
            HistoryEntry.model_validate(
                {
                    **item,
                    "action": str(item.get("action") or "unknown"),
                    "timestamp": _timestamp(item.get("timestamp")) or "",
                }
            )
        )
    return entries


class AppointmentMapper:
    """Maps raw appointment documents to canonical Appointments."""

    def __init__(
        self,
        store: DocumentStore,
        stylist_placeholder: str | None = None,
        default_duration: int | None = None,
    ):
        settings = get_settings()
        self.store = store
        self.stylist_placeholder = stylist_placeholder or settings.STYLIST_NAME_PLACEHOLDER
        self.default_duration = default_duration or settings.DEFAULT_SERVICE_DURATION_MINUTES

    async def map(
        self,
        doc: StoreDocument,
        related: RelatedEntities | None = None,
        cache: LookupCache | None = None,
    ) -> Appointment:
        """
        Map one raw record.

        Args:
            doc: Raw appointment document
            related: Optional pre-fetched related records
            cache: Lookup cache shared across a batch

        Returns:
            Canonical Appointment

        Raises:
            pydantic.ValidationError: If the raw record cannot be parsed
        """
        related = related or RelatedEntities()
        cache = cache if cache is not None else {}
        raw = parse_raw_record(doc)

        stylist_id = raw.primary_stylist_id()
        service_id = raw.primary_service_id()
        client_id = raw.owner_client_id
        branch_id = raw.branch_id or ""

        stylist = related.stylist or await self._lookup(USERS, stylist_id, cache)
        fetched_service = related.service or await self._lookup(SERVICES, service_id, cache)
        branch_data = related.branch or await self._lookup(BRANCHES, branch_id, cache)
        client = related.client or await self._lookup(USERS, client_id, cache)

        service = self._service_info(raw, service_id, fetched_service)
        branch = self._branch_info(branch_id, branch_data)
        contact = self._client_contact(raw, client)

        duration = resolve_duration(raw, fetched_service, self.default_duration)
        price = resolve_price(raw, fetched_service)
        start_time = normalize_time(raw.time or raw.start_time)
        end_time = normalize_time(raw.end_time) if raw.end_time else ""
        if not end_time and start_time:
            end_time = add_minutes(start_time, duration)

        return Appointment(
            id=doc.id,
            client_id=client_id,
            primary_stylist_id=stylist_id,
            primary_service_id=service_id,
            branch_id=branch_id,
            date=normalize_date(raw.date or raw.appointment_date or raw.scheduled_date),
            time=start_time,
            end_time=end_time,
            duration_minutes=duration,
            status=self._status(raw),
            price=price,
            discount=raw.discount,
            final_price=raw.final_price if raw.final_price is not None else price,
            payment_status=raw.payment_status,
            payment_method=raw.payment_method,
            service_stylist_pairs=build_pairs(raw),
            history=build_history(raw),
            notes=raw.notes,
            cancellation_reason=raw.cancellation_reason,
            client_name=contact.name,
            client_phone=contact.phone,
            client_email=contact.email,
            client_allergies=contact.allergies,
            stylist_name=(profile_name(stylist) if stylist else "") or self.stylist_placeholder,
            branch_name=(branch.name or "") if branch else "",
            service=service,
            branch=branch,
            created_at=_timestamp(raw.created_at),
            updated_at=_timestamp(raw.updated_at),
        )

    async def map_many(self, docs: list[StoreDocument]) -> list[Appointment]:
        """Map a batch; records that fail to map are logged and skipped."""
        cache: LookupCache = {}
        appointments = []
        for doc in docs:
            try:
                appointments.append(await self.map(doc, cache=cache))
            except Exception as e:
                logger.warning(
                    f"Skipping appointment {doc.id}: could not map record: {e}",
                    extra={"appointment_id": doc.id},
                )
        return appointments

    async def _lookup(
        self, collection: str, doc_id: str, cache: LookupCache
    ) -> dict[str, Any] | None:
        if not doc_id:
            return None
        key = (collection, doc_id)
        if key in cache:
            return cache[key]

        try:
            doc = await self.store.get_by_id(collection, doc_id)
            data = doc.data if doc else None
        except Exception as e:
            logger.warning(f"Lookup {collection}/{doc_id} failed, using fallback: {e}")
            data = None

        cache[key] = data
        return data

    def _status(self, raw: RawAppointment) -> AppointmentStatus:
        status = normalize_status(raw.status)
        if status is None:
            if raw.status:
                logger.warning(
                    f"Unknown status '{raw.status}' on appointment {raw.id}, using pending",
                    extra={"appointment_id": raw.id},
                )
            return AppointmentStatus.PENDING
        return status

    @staticmethod
    def _service_info(
        raw: RawAppointment, service_id: str, fetched: dict[str, Any] | None
    ) -> ServiceInfo | None:
        if fetched:
            return ServiceInfo(
                id=service_id,
                name=fetched.get("name") or "",
                description=fetched.get("description") or "",
                price=fetched.get("price"),
                duration=fetched.get("duration"),
                category=fetched.get("category") or fetched.get("categoryId") or "",
            )
        if raw.services:
            entry = raw.services[0]
            return ServiceInfo(
                id=entry.id or service_id,
                name=entry.name or "",
                description=entry.description or "",
                price=entry.price,
                duration=entry.duration,
                category=entry.category or entry.category_id or "",
            )
        return None

    @staticmethod
    def _branch_info(branch_id: str, data: dict[str, Any] | None) -> BranchInfo | None:
        if not branch_id:
            return None
        if not data:
            return BranchInfo(id=branch_id)
        return BranchInfo(
            id=branch_id,
            name=data.get("name"),
            address=data.get("address"),
            phone=data.get("phone"),
            email=data.get("email"),
        )

    @staticmethod
    def _client_contact(raw: RawAppointment, profile: dict[str, Any] | None) -> ClientContact:
        if profile:
            return ClientContact(
                name=profile_name(profile),
                phone=_text(profile.get("phoneNumber") or profile.get("phone")),
                email=_text(profile.get("email")),
                allergies=_text(profile.get("allergies")),
            )

        info = raw.client_info
        embedded_name = ""
        if info:
            embedded_name = info.name or f"{info.first_name or ''} {info.last_name or ''}".strip()
        if not embedded_name:
            embedded_name = raw.client_name or (
                f"{raw.client_first_name or ''} {raw.client_last_name or ''}".strip()
            )

        return ClientContact(
            name=embedded_name,
            phone=_text((info.phone if info else None) or raw.client_phone),
            email=_text((info.email if info else None) or raw.client_email),
            allergies=_text(info.allergies if info else None),
        )
