"""
Live appointment sync.

subscribe(owner_id, role, callback) keeps a caller's appointment list current:

    store change batch -> [stylist: merge full scan] -> dedupe by id
        -> map -> sort (date desc, time desc) -> callback(list)

Architecture:
- One change subscription per caller on the primary ownership field
  (clientId / stylistId).
- Remaps are serialized per subscription with an asyncio.Lock. Each batch
  takes a sequence number; a batch that has been superseded by a newer one
  is dropped instead of publishing stale state.
- unsubscribe() detaches the store listener and flips a liveness flag, so no
  callback fires after it returns, even for a remap already in flight.
- Subscription errors are logged and never retried here.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable
from uuid import uuid4

from booking.models import Appointment
from booking.services.appointment_mapper import AppointmentMapper
from booking.services.appointment_query_service import (
    AppointmentQueryService,
    primary_filter,
)
from database.document_store import APPOINTMENTS, DocumentStore, StoreDocument, Subscription
from database.models import OwnerRole

logger = logging.getLogger(__name__)

AppointmentsCallback = Callable[[list[Appointment]], Any]


def sort_appointments(appointments: list[Appointment]) -> list[Appointment]:
    """Newest first: date descending, then HH:mm time descending, then id."""
    return sorted(
        appointments,
        key=lambda appointment: (appointment.date, appointment.time, appointment.id),
        reverse=True,
    )


class LiveSubscription:
    """One caller's live appointment subscription."""

    def __init__(
        self,
        owner_id: str,
        role: OwnerRole,
        callback: AppointmentsCallback,
        mapper: AppointmentMapper,
        query_service: AppointmentQueryService,
    ):
        self.id = uuid4().hex[:12]
        self.owner_id = owner_id
        self.role = role
        self.callback = callback
        self.mapper = mapper
        self.query_service = query_service

        self.active = True
        self._sequence = 0
        self._lock = asyncio.Lock()
        self._store_subscription: Subscription | None = None

    @property
    def log_extra(self) -> dict[str, str]:
        return {"subscription_id": self.id, "owner_id": self.owner_id, "role": self.role.value}

    def attach(self, store_subscription: Subscription) -> None:
        self._store_subscription = store_subscription

    def unsubscribe(self) -> None:
        """Stop the subscription. Safe to call more than once."""
        if not self.active:
            return
        self.active = False
        if self._store_subscription is not None:
            self._store_subscription.unsubscribe()
        logger.info(f"Appointment subscription {self.id} closed", extra=self.log_extra)

    async def on_batch(self, docs: list[StoreDocument]) -> None:
        if not self.active:
            return
        self._sequence += 1
        sequence = self._sequence

        async with self._lock:
            if not self._is_current(sequence):
                return

            merged: dict[str, StoreDocument] = {doc.id: doc for doc in docs}
            if self.role == OwnerRole.STYLIST:
                try:
                    for doc in await self.query_service.scan(self.owner_id, self.role):
                        merged.setdefault(doc.id, doc)
                except Exception as e:
                    logger.warning(
                        f"Stylist rescan failed for subscription {self.id}: {e}",
                        extra=self.log_extra,
                    )

            appointments = sort_appointments(await self.mapper.map_many(list(merged.values())))

            if not self._is_current(sequence):
                logger.debug(
                    f"Dropping superseded batch {sequence} for subscription {self.id}",
                    extra=self.log_extra,
                )
                return

            try:
                result = self.callback(appointments)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    f"Appointment callback failed for subscription {self.id}: {e}",
                    extra=self.log_extra,
                    exc_info=True,
                )

    def on_error(self, error: Exception) -> None:
        logger.error(
            f"Appointment subscription {self.id} error (not retrying): {error}",
            extra=self.log_extra,
        )

    def _is_current(self, sequence: int) -> bool:
        return self.active and sequence == self._sequence


class LiveSyncService:
    """Opens live appointment subscriptions."""

    def __init__(
        self,
        store: DocumentStore,
        mapper: AppointmentMapper | None = None,
        query_service: AppointmentQueryService | None = None,
    ):
        self.store = store
        self.mapper = mapper or AppointmentMapper(store)
        self.query_service = query_service or AppointmentQueryService(store)

    def subscribe(
        self, owner_id: str, role: OwnerRole, callback: AppointmentsCallback
    ) -> Callable[[], None]:
        """
        Subscribe to an owner's appointments.

        Args:
            owner_id: Client or stylist user id
            role: Ownership role
            callback: Called with the sorted appointment list once per batch
                (sync or async)

        Returns:
            Idempotent unsubscribe function
        """
        subscription = LiveSubscription(
            owner_id, role, callback, self.mapper, self.query_service
        )
        subscription.attach(
            self.store.subscribe(
                APPOINTMENTS,
                [primary_filter(owner_id, role)],
                subscription.on_batch,
                subscription.on_error,
            )
        )
        logger.info(
            f"Appointment subscription {subscription.id} opened for {role.value} {owner_id}",
            extra=subscription.log_extra,
        )
        return subscription.unsubscribe
