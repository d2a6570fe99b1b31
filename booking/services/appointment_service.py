"""
Appointment service - Caller-facing appointment operations.

Operations:
- get_appointments / get_appointment: Resolve, map and sort appointments
- subscribe_appointments: Live appointment list for a client or stylist
- create_appointment: Persist a booking, notify every assigned stylist
- update_appointment: Patch a booking; status writes follow the lifecycle
- cancel_appointment / reschedule_appointment: Status-specific updates
- record_payment: Mark a booking paid, notify stylists of their commission
- send_reminder: Reminder to the primary stylist (used by the reminder worker)
- mark_notification_read / mark_all_read: In-app notification read state
- drain_local_notifications: Local notifications queued for a connected session

Architecture:
- The primary mutation is always persisted before any notification is
  dispatched. Dispatch failures are logged and never undo or block it.
- History is append-only: every mutation appends an entry and caller-supplied
  history is ignored.
- Stylist notifications (created, cancelled, rescheduled, reminder, walk-in,
  payment) go to stylists; status notifications (confirmed, in service,
  completed) go to the client.
"""

import logging
from typing import Any, Callable

from booking.formatting import add_minutes, normalize_date, normalize_time, now_iso
from booking.models import Appointment, ServiceStylistPair
from booking.services.appointment_mapper import AppointmentMapper
from booking.services.appointment_query_service import AppointmentQueryService
from booking.services.live_sync_service import (
    AppointmentsCallback,
    LiveSyncService,
    sort_appointments,
)
from booking.services.notification_dispatcher import (
    DispatchContext,
    DispatchEvent,
    DispatchResult,
    NotificationDispatcher,
)
from booking.services.notification_service import NotificationService
from booking.services.status_transitions import (
    RESCHEDULABLE_STATUSES,
    InvalidStatusTransitionError,
    normalize_status,
    status_change_event,
    validate_transition,
)
from database.document_store import APPOINTMENTS, DocumentStore, StoreDocument
from database.models import AppointmentStatus, OwnerRole
from shared.config import get_settings
from shared.push_client import LocalNotification

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "No reason provided"

CLIENT_EVENTS = frozenset({
    DispatchEvent.CONFIRMED,
    DispatchEvent.IN_SERVICE,
    DispatchEvent.COMPLETED,
})


class AppointmentNotFoundError(Exception):
    """Raised when an operation targets an appointment that does not exist."""

    def __init__(self, appointment_id: str):
        super().__init__(f"Appointment not found: {appointment_id}")
        self.appointment_id = appointment_id


def stylist_groups(appointment: Appointment) -> dict[str, list[ServiceStylistPair]]:
    """Pairs grouped by stylist id, in first-seen order."""
    groups: dict[str, list[ServiceStylistPair]] = {}
    for pair in appointment.service_stylist_pairs:
        if pair.stylist_id:
            groups.setdefault(pair.stylist_id, []).append(pair)
    if not groups and appointment.primary_stylist_id:
        groups[appointment.primary_stylist_id] = []
    return groups


def _stylist_ids(body: dict[str, Any]) -> list[str]:
    """Distinct stylist ids of the pairs (or legacy stylists), in order."""
    stylist_ids: list[str] = []
    for entry in body.get("serviceStylistPairs") or body.get("stylists") or []:
        stylist_id = entry.get("stylistId") if isinstance(entry, dict) else None
        if stylist_id and stylist_id not in stylist_ids:
            stylist_ids.append(stylist_id)
    return stylist_ids


def _denormalize_ownership(body: dict[str, Any]) -> None:
    """Fill stylistId/stylistIds from the pairs so indexed queries find the record."""
    stylist_ids = _stylist_ids(body)
    if stylist_ids:
        body.setdefault("stylistIds", stylist_ids)
        body.setdefault("stylistId", stylist_ids[0])


class AppointmentService:
    """Reads, mutates and notifies on appointments."""

    def __init__(
        self,
        store: DocumentStore,
        dispatcher: NotificationDispatcher | None = None,
        mapper: AppointmentMapper | None = None,
        query_service: AppointmentQueryService | None = None,
        notification_service: NotificationService | None = None,
    ):
        self.store = store
        self.mapper = mapper or AppointmentMapper(store)
        self.query_service = query_service or AppointmentQueryService(store)
        self.notification_service = notification_service or NotificationService(store)
        self.dispatcher = dispatcher or NotificationDispatcher(
            store, notification_service=self.notification_service
        )
        self.live_sync = LiveSyncService(store, self.mapper, self.query_service)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_appointments(self, owner_id: str, role: OwnerRole) -> list[Appointment]:
        docs = await self.query_service.resolve(owner_id, role)
        return sort_appointments(await self.mapper.map_many(docs))

    async def get_appointment(self, appointment_id: str) -> Appointment:
        doc = await self._require(appointment_id)
        return await self.mapper.map(doc)

    def subscribe_appointments(
        self, owner_id: str, role: OwnerRole, callback: AppointmentsCallback
    ) -> Callable[[], None]:
        return self.live_sync.subscribe(owner_id, role, callback)

    # ========================================================================
    # Mutations
    # ========================================================================

    async def create_appointment(self, data: dict[str, Any], walk_in: bool = False) -> str:
        """
        Persist a new appointment and notify each assigned stylist.

        Args:
            data: Raw appointment body (any supported record shape)
            walk_in: Client is already at the salon; stylists get a walk-in
                notification instead of a new-booking one

        Returns:
            The new appointment id

        Raises:
            InvalidStatusTransitionError: If ``status`` is not a known status
        """
        body = dict(data)
        body.pop("id", None)

        status = normalize_status(body.get("status") or AppointmentStatus.PENDING)
        if status is None:
            raise InvalidStatusTransitionError(None, body.get("status"), "unknown status")
        body["status"] = status.value

        now = now_iso()
        body.setdefault("createdAt", now)
        body["updatedAt"] = now
        body["history"] = list(body.get("history") or []) + [
            {"action": "walk_in" if walk_in else "created", "timestamp": now}
        ]
        _denormalize_ownership(body)

        appointment_id = await self.store.create(APPOINTMENTS, body)
        logger.info(
            f"Appointment created: {appointment_id} (status={status.value})",
            extra={"appointment_id": appointment_id},
        )

        appointment = await self._map_for_dispatch(appointment_id, body)
        if appointment:
            event = DispatchEvent.WALK_IN if walk_in else DispatchEvent.CREATED
            for stylist_id, pairs in stylist_groups(appointment).items():
                ctx = self._stylist_context(appointment, stylist_id, pairs)
                if walk_in:
                    ctx.total_amount = (
                        sum(p.service_price for p in pairs) if pairs else appointment.price
                    )
                await self._safe_dispatch(event, ctx)

        return appointment_id

    async def update_appointment(
        self,
        appointment_id: str,
        patch: dict[str, Any],
        actor: str | None = None,
    ) -> None:
        """
        Patch an appointment.

        A ``status`` in the patch is checked against the lifecycle. A real
        status change appends a history entry and notifies; rewriting the
        current status does not notify, except cancellation which always does.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist
            InvalidStatusTransitionError: If the status change is not allowed
        """
        doc = await self._require(appointment_id)
        patch = dict(patch)
        patch.pop("id", None)
        if patch.pop("history", None) is not None:
            logger.warning(
                f"Ignoring history in update of {appointment_id}: history is append-only",
                extra={"appointment_id": appointment_id},
            )

        now = now_iso()
        history = list(doc.data.get("history") or [])
        previous = normalize_status(doc.data.get("status"))
        new_status: AppointmentStatus | None = None

        if "status" in patch:
            new_status = validate_transition(previous, patch["status"])
            patch["status"] = new_status.value

            if new_status == AppointmentStatus.CANCELLED:
                patch["cancellationReason"] = (
                    patch.get("cancellationReason")
                    or doc.data.get("cancellationReason")
                    or DEFAULT_CANCELLATION_REASON
                )

        # Reassigned stylists must move the indexed ownership fields with them
        if "serviceStylistPairs" in patch or "stylists" in patch:
            stylist_ids = _stylist_ids({**doc.data, **patch})
            if stylist_ids:
                patch["stylistIds"] = stylist_ids
                patch["stylistId"] = stylist_ids[0]

        entry: dict[str, Any]
        if new_status is not None and new_status != previous:
            entry = {
                "action": "status_changed",
                "timestamp": now,
                "fromStatus": previous.value if previous else None,
                "toStatus": new_status.value,
            }
            if new_status == AppointmentStatus.CANCELLED:
                entry["reason"] = patch["cancellationReason"]
        else:
            entry = {"action": "updated", "timestamp": now, "fields": sorted(patch)}
        if actor:
            entry["actor"] = actor
        history.append(entry)

        patch["history"] = history
        patch["updatedAt"] = now
        await self.store.update(APPOINTMENTS, appointment_id, patch)
        logger.info(
            f"Appointment updated: {appointment_id} "
            f"(status {previous.value if previous else None} -> "
            f"{new_status.value if new_status else 'unchanged'})",
            extra={"appointment_id": appointment_id},
        )

        if new_status is None:
            return
        if new_status == AppointmentStatus.CANCELLED:
            event = DispatchEvent.CANCELLED
        else:
            event = status_change_event(previous, new_status)
        if event is None:
            return

        appointment = await self._map_for_dispatch(appointment_id, {**doc.data, **patch})
        if appointment:
            await self._notify_appointment(event, appointment)

    async def cancel_appointment(
        self, appointment_id: str, reason: str, actor: str | None = None
    ) -> None:
        """
        Cancel an appointment and notify its primary stylist.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist
            InvalidStatusTransitionError: If the appointment is already closed
        """
        await self.update_appointment(
            appointment_id,
            {"status": AppointmentStatus.CANCELLED.value, "cancellationReason": reason},
            actor=actor,
        )

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_date: str,
        new_time: str,
        notes: str | None = None,
        actor: str | None = None,
    ) -> None:
        """
        Move an appointment to a new date/time.

        The status becomes ``scheduled`` and the move is appended to the
        history as ``{oldDate, oldTime, newDate, newTime, notes, actor}``.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist
            InvalidStatusTransitionError: If the appointment is no longer upcoming
        """
        doc = await self._require(appointment_id)
        current = await self.mapper.map(doc)

        if current.status not in RESCHEDULABLE_STATUSES:
            raise InvalidStatusTransitionError(
                current.status,
                AppointmentStatus.SCHEDULED,
                "only upcoming appointments can be rescheduled",
            )

        date_value = normalize_date(new_date)
        time_value = normalize_time(new_time)
        now = now_iso()

        history = list(doc.data.get("history") or [])
        history.append({
            "action": "rescheduled",
            "timestamp": now,
            "oldDate": current.date,
            "oldTime": current.time,
            "newDate": date_value,
            "newTime": time_value,
            "notes": notes,
            "actor": actor,
        })

        patch = {
            "date": date_value,
            "time": time_value,
            "endTime": add_minutes(time_value, current.duration_minutes),
            "status": AppointmentStatus.SCHEDULED.value,
            "history": history,
            "updatedAt": now,
        }
        await self.store.update(APPOINTMENTS, appointment_id, patch)
        logger.info(
            f"Appointment rescheduled: {appointment_id} "
            f"{current.date} {current.time} -> {date_value} {time_value}",
            extra={"appointment_id": appointment_id},
        )

        appointment = await self._map_for_dispatch(appointment_id, {**doc.data, **patch})
        if appointment and appointment.primary_stylist_id:
            ctx = self._stylist_context(appointment, appointment.primary_stylist_id)
            ctx.old_date, ctx.old_time = current.date, current.time
            ctx.new_date, ctx.new_time = date_value, time_value
            await self._safe_dispatch(DispatchEvent.RESCHEDULED, ctx)

    async def record_payment(
        self,
        appointment_id: str,
        payment_method: str,
        transaction_id: str | None = None,
    ) -> None:
        """
        Mark an appointment paid and notify each stylist of their commission.

        Raises:
            AppointmentNotFoundError: If the appointment does not exist
        """
        doc = await self._require(appointment_id)
        now = now_iso()
        history = list(doc.data.get("history") or [])
        history.append({
            "action": "payment_recorded",
            "timestamp": now,
            "paymentMethod": payment_method,
            "transactionId": transaction_id,
        })

        patch = {
            "paymentStatus": "paid",
            "paymentMethod": payment_method,
            "history": history,
            "updatedAt": now,
        }
        if transaction_id:
            patch["transactionId"] = transaction_id
        await self.store.update(APPOINTMENTS, appointment_id, patch)
        logger.info(
            f"Payment recorded for appointment {appointment_id} ({payment_method})",
            extra={"appointment_id": appointment_id},
        )

        appointment = await self._map_for_dispatch(appointment_id, {**doc.data, **patch})
        if not appointment:
            return

        rate = get_settings().STYLIST_COMMISSION_RATE
        for stylist_id, pairs in stylist_groups(appointment).items():
            total = sum(p.service_price for p in pairs) if pairs else appointment.final_price
            ctx = self._stylist_context(appointment, stylist_id, pairs)
            ctx.total_amount = total
            ctx.commission = round(total * rate, 2)
            ctx.payment_method = payment_method
            ctx.transaction_id = transaction_id
            await self._safe_dispatch(DispatchEvent.TRANSACTION_PAID, ctx)

    async def send_reminder(self, appointment: Appointment) -> DispatchResult | None:
        """Send a reminder for an upcoming appointment to its primary stylist."""
        if not appointment.primary_stylist_id:
            logger.warning(
                f"Appointment {appointment.id} has no stylist, reminder skipped",
                extra={"appointment_id": appointment.id},
            )
            return None
        return await self._safe_dispatch(
            DispatchEvent.REMINDER,
            self._stylist_context(appointment, appointment.primary_stylist_id),
        )

    # ========================================================================
    # Notifications
    # ========================================================================

    async def mark_notification_read(self, notification_id: str) -> None:
        await self.notification_service.mark_as_read(notification_id)

    async def mark_all_read(self, recipient_id: str) -> int:
        return await self.notification_service.mark_all_as_read(recipient_id)

    def drain_local_notifications(self, recipient_id: str) -> list[LocalNotification]:
        """Hand a connected session the local notifications queued for it."""
        return self.dispatcher.local_queue.drain(recipient_id)

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _require(self, appointment_id: str) -> StoreDocument:
        doc = await self.store.get_by_id(APPOINTMENTS, appointment_id)
        if doc is None:
            raise AppointmentNotFoundError(appointment_id)
        return doc

    async def _map_for_dispatch(
        self, appointment_id: str, data: dict[str, Any]
    ) -> Appointment | None:
        try:
            return await self.mapper.map(StoreDocument(id=appointment_id, data=data))
        except Exception as e:
            logger.error(
                f"Could not map appointment {appointment_id} for notification, skipping: {e}",
                extra={"appointment_id": appointment_id},
            )
            return None

    async def _notify_appointment(self, event: DispatchEvent, appointment: Appointment) -> None:
        if event in CLIENT_EVENTS:
            if not appointment.client_id:
                logger.warning(
                    f"Appointment {appointment.id} has no client, {event.value} not sent",
                    extra={"appointment_id": appointment.id},
                )
                return
            await self._safe_dispatch(event, self._client_context(appointment))
            return

        if not appointment.primary_stylist_id:
            logger.warning(
                f"Appointment {appointment.id} has no stylist, {event.value} not sent",
                extra={"appointment_id": appointment.id},
            )
            return
        await self._safe_dispatch(
            event, self._stylist_context(appointment, appointment.primary_stylist_id)
        )

    async def _safe_dispatch(
        self, event: DispatchEvent, ctx: DispatchContext
    ) -> DispatchResult | None:
        try:
            return await self.dispatcher.dispatch(event, ctx)
        except Exception as e:
            logger.error(
                f"Dispatch of {event.value} for appointment {ctx.appointment_id} failed: {e}",
                extra={"appointment_id": ctx.appointment_id, "event_type": event.value},
                exc_info=True,
            )
            return None

    @staticmethod
    def _service_name(appointment: Appointment, pairs: list[ServiceStylistPair]) -> str:
        if len(pairs) == 1 and pairs[0].service_name:
            return pairs[0].service_name
        if appointment.service and appointment.service.name:
            return appointment.service.name
        if appointment.service_stylist_pairs:
            return appointment.service_stylist_pairs[0].service_name
        return ""

    def _stylist_context(
        self,
        appointment: Appointment,
        stylist_id: str,
        pairs: list[ServiceStylistPair] | None = None,
    ) -> DispatchContext:
        pairs = pairs or []
        return DispatchContext(
            recipient_id=stylist_id,
            role=OwnerRole.STYLIST,
            appointment_id=appointment.id,
            client_name=appointment.client_name,
            service_name=self._service_name(appointment, pairs),
            service_count=max(len(pairs), 1),
            services=list(pairs),
            appointment_date=appointment.date,
            appointment_time=appointment.time,
        )

    def _client_context(self, appointment: Appointment) -> DispatchContext:
        return DispatchContext(
            recipient_id=appointment.client_id,
            role=OwnerRole.CLIENT,
            email=appointment.client_email or None,
            name=appointment.client_name or None,
            appointment_id=appointment.id,
            client_name=appointment.client_name,
            service_name=self._service_name(appointment, appointment.service_stylist_pairs),
            service_count=max(len(appointment.service_stylist_pairs), 1),
            appointment_date=appointment.date,
            appointment_time=appointment.time,
        )
