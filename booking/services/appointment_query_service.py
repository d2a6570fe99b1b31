"""
Appointment query union resolver.

Appointment ownership has been written under several field names over time:

    client:  clientId, uid, userId (and clientInfo.id on embedded records)
    stylist: stylistId, stylistIds[] (plus serviceStylistPairs[].stylistId and
             stylists[].stylistId, which cannot be filtered server-side)

resolve() runs one indexed query per ownership field, unions the results and
deduplicates them by id. A failing query (e.g. missing index) is logged and
skipped. Only when every indexed query comes back empty does it fall back to a
full collection scan filtered client-side, to catch legacy records that are
not reachable through any index.
"""

import logging
from typing import Any

from database.document_store import (
    APPOINTMENTS,
    DocumentStore,
    FieldFilter,
    FilterOp,
    QueryError,
    StoreDocument,
    get_field,
)
from database.models import OwnerRole

logger = logging.getLogger(__name__)

CLIENT_OWNER_FIELDS = ("clientId", "uid", "userId")


def ownership_filters(owner_id: str, role: OwnerRole) -> list[FieldFilter]:
    """Indexed alternate filters covering every ownership field for a role."""
    if role == OwnerRole.CLIENT:
        return [FieldFilter(name, FilterOp.EQUALS, owner_id) for name in CLIENT_OWNER_FIELDS]
    return [
        FieldFilter("stylistId", FilterOp.EQUALS, owner_id),
        FieldFilter("stylistIds", FilterOp.ARRAY_CONTAINS, owner_id),
    ]


def primary_filter(owner_id: str, role: OwnerRole) -> FieldFilter:
    """Filter on the current ownership field, used for change subscriptions."""
    name = "clientId" if role == OwnerRole.CLIENT else "stylistId"
    return FieldFilter(name, FilterOp.EQUALS, owner_id)


def record_belongs_to(data: dict[str, Any], owner_id: str, role: OwnerRole) -> bool:
    """Client-side ownership check over direct fields and embedded arrays."""
    if role == OwnerRole.CLIENT:
        if any(data.get(name) == owner_id for name in CLIENT_OWNER_FIELDS):
            return True
        return get_field(data, "clientInfo.id") == owner_id

    if data.get("stylistId") == owner_id:
        return True
    stylist_ids = data.get("stylistIds")
    if isinstance(stylist_ids, list) and owner_id in stylist_ids:
        return True
    for array_name in ("serviceStylistPairs", "stylists"):
        entries = data.get(array_name)
        if not isinstance(entries, list):
            continue
        if any(isinstance(entry, dict) and entry.get("stylistId") == owner_id for entry in entries):
            return True
    return False


class AppointmentQueryService:
    """Finds every raw appointment record owned by a client or stylist."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def resolve(self, owner_id: str, role: OwnerRole) -> list[StoreDocument]:
        """
        Union of all ownership queries, deduplicated by id.

        Args:
            owner_id: Client or stylist user id
            role: Which ownership fields to query

        Returns:
            Raw appointment documents in first-seen order

        Raises:
            QueryError: If every indexed query and the fallback scan failed
        """
        log_extra = {"owner_id": owner_id, "role": role.value}
        union: dict[str, StoreDocument] = {}
        filters = ownership_filters(owner_id, role)
        failures = 0

        for condition in filters:
            try:
                docs = await self.store.query(APPOINTMENTS, [condition])
            except Exception as e:
                failures += 1
                logger.warning(
                    f"Appointment query {condition.describe()} failed, skipping: {e}",
                    extra=log_extra,
                )
                continue

            for doc in docs:
                union.setdefault(doc.id, doc)

        if union:
            logger.debug(
                f"Resolved {len(union)} appointments for {role.value} {owner_id}",
                extra=log_extra,
            )
            return list(union.values())

        logger.info(
            f"No indexed appointments for {role.value} {owner_id}, scanning collection",
            extra=log_extra,
        )
        try:
            return await self.scan(owner_id, role)
        except Exception as e:
            logger.error(f"Fallback appointment scan failed: {e}", extra=log_extra)
            if failures == len(filters):
                raise QueryError(
                    f"All appointment queries failed for {role.value} {owner_id}"
                ) from e
            return []

    async def scan(self, owner_id: str, role: OwnerRole) -> list[StoreDocument]:
        """
        Full collection read filtered client-side.

        O(collection size); only used when the indexed queries find nothing
        and by the live sync engine for stylist subscriptions.
        """
        docs = await self.store.query(APPOINTMENTS)
        matched = [doc for doc in docs if record_belongs_to(doc.data, owner_id, role)]
        logger.debug(
            f"Fallback scan matched {len(matched)} of {len(docs)} appointments",
            extra={"owner_id": owner_id, "role": role.value},
        )
        return matched
