"""
Unit tests for AppointmentService.

Coverage:
- Create: persistence, ownership denormalization, per-stylist dispatch
- Update: lifecycle checks, idempotent writes, append-only history
- Cancel / reschedule: persisted before dispatch, survive transport failures
- Payment, reminders, notification read state
"""

from unittest.mock import AsyncMock, patch

import pytest

from booking.services.appointment_service import AppointmentNotFoundError
from booking.services.notification_dispatcher import DispatchEvent
from booking.services.status_transitions import InvalidStatusTransitionError
from database.document_store import APPOINTMENTS, NOTIFICATIONS, FieldFilter, FilterOp
from database.models import OwnerRole

BOOKING = {
    "clientId": "C1",
    "branchId": "B1",
    "date": "2024-07-01",
    "time": "10:00",
    "serviceStylistPairs": [
        {"serviceId": "SV1", "serviceName": "Haircut", "servicePrice": 350, "stylistId": "S1"},
        {"serviceId": "SV2", "serviceName": "Hair Color", "servicePrice": 1200, "stylistId": "S2"},
    ],
}


async def seed(store, status="confirmed", doc_id="A1", **extra):
    body = {
        "clientId": "C1",
        "date": "2024-07-01",
        "time": "10:00",
        "status": status,
        "serviceStylistPairs": [
            {"serviceId": "SV1", "serviceName": "Haircut", "servicePrice": 350, "stylistId": "S1"}
        ],
        "history": [{"action": "created", "timestamp": "2024-06-01T00:00:00+00:00"}],
        **extra,
    }
    await store.create(APPOINTMENTS, body, doc_id=doc_id)
    return doc_id


async def notifications_for(store, recipient_id):
    docs = await store.query(
        NOTIFICATIONS, [FieldFilter("recipientId", FilterOp.EQUALS, recipient_id)]
    )
    return [doc.data for doc in docs]


def dispatched_events(spy):
    return [call.args[0] for call in spy.call_args_list]


# ============================================================================
# Create
# ============================================================================


class TestCreateAppointment:
    @pytest.mark.asyncio
    async def test_persists_with_defaults(self, appointment_service, store):
        appointment_id = await appointment_service.create_appointment(BOOKING)

        doc = await store.get_by_id(APPOINTMENTS, appointment_id)
        assert doc.data["status"] == "pending"
        assert doc.data["stylistId"] == "S1"
        assert doc.data["stylistIds"] == ["S1", "S2"]
        assert [h["action"] for h in doc.data["history"]] == ["created"]
        assert doc.data["createdAt"] == doc.data["updatedAt"]

    @pytest.mark.asyncio
    async def test_notifies_each_stylist_once(self, appointment_service, store, push_client):
        await appointment_service.create_appointment(BOOKING)

        s1 = await notifications_for(store, "S1")
        s2 = await notifications_for(store, "S2")
        assert len(s1) == 1 and len(s2) == 1
        assert "Haircut" in s1[0]["message"]
        assert "Hair Color" in s2[0]["message"]
        assert {m["address"] for m in push_client.sent} == {
            "ExponentPushToken[stylist-s1]",
            "ExponentPushToken[stylist-s2]",
        }

    @pytest.mark.asyncio
    async def test_stylist_with_several_services_gets_count(self, appointment_service, store):
        booking = {
            "clientId": "C1",
            "serviceStylistPairs": [
                {"serviceId": "SV1", "serviceName": "Haircut", "stylistId": "S1"},
                {"serviceId": "SV2", "serviceName": "Hair Color", "stylistId": "S1"},
            ],
        }

        await appointment_service.create_appointment(booking)

        [notification] = await notifications_for(store, "S1")
        assert "2 services" in notification["message"]

    @pytest.mark.asyncio
    async def test_walk_in_notification(self, appointment_service, store):
        await appointment_service.create_appointment(
            {**BOOKING, "status": "in_progress"}, walk_in=True
        )

        [notification] = await notifications_for(store, "S2")
        assert notification["type"] == "walk_in_client"
        assert "₱1,200.00" in notification["message"]

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, appointment_service, store):
        with pytest.raises(InvalidStatusTransitionError):
            await appointment_service.create_appointment({**BOOKING, "status": "archived"})
        assert await store.query(APPOINTMENTS) == []

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_fail_create(self, appointment_service, store):
        with patch.object(
            appointment_service.dispatcher, "dispatch", AsyncMock(side_effect=RuntimeError("down"))
        ):
            appointment_id = await appointment_service.create_appointment(BOOKING)

        assert await store.get_by_id(APPOINTMENTS, appointment_id) is not None


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    @pytest.mark.asyncio
    async def test_get_appointments_sorted(self, appointment_service, store):
        await seed(store, doc_id="early", date="2024-07-01", time="09:00")
        await seed(store, doc_id="late", date="2024-07-01", time="16:00")
        await seed(store, doc_id="legacy", uid="C1", clientId=None, date="2024-08-01")

        appointments = await appointment_service.get_appointments("C1", OwnerRole.CLIENT)

        assert [a.id for a in appointments] == ["legacy", "late", "early"]

    @pytest.mark.asyncio
    async def test_get_missing_appointment(self, appointment_service):
        with pytest.raises(AppointmentNotFoundError):
            await appointment_service.get_appointment("missing")


# ============================================================================
# Status updates
# ============================================================================


class TestUpdateAppointment:
    @pytest.mark.asyncio
    async def test_idempotent_status_write_does_not_dispatch(self, appointment_service, store):
        await seed(store, status="confirmed")

        with patch.object(
            appointment_service.dispatcher, "dispatch", wraps=appointment_service.dispatcher.dispatch
        ) as spy:
            await appointment_service.update_appointment("A1", {"status": "confirmed"})

        assert spy.call_count == 0

    @pytest.mark.asyncio
    async def test_in_progress_dispatches_in_service_once(self, appointment_service, store, email_client):
        await seed(store, status="confirmed")

        with patch.object(
            appointment_service.dispatcher, "dispatch", wraps=appointment_service.dispatcher.dispatch
        ) as spy:
            await appointment_service.update_appointment("A1", {"status": "in_progress"})

        assert dispatched_events(spy) == [DispatchEvent.IN_SERVICE]
        ctx = spy.call_args.args[1]
        assert ctx.recipient_id == "C1"
        assert ctx.role == OwnerRole.CLIENT
        assert email_client.sent[0]["to_address"] == "ana@client.test"

    @pytest.mark.asyncio
    async def test_completed_dispatches_completed(self, appointment_service, store):
        await seed(store, status="in_progress")

        with patch.object(
            appointment_service.dispatcher, "dispatch", wraps=appointment_service.dispatcher.dispatch
        ) as spy:
            await appointment_service.update_appointment("A1", {"status": "completed"})

        assert dispatched_events(spy) == [DispatchEvent.COMPLETED]

    @pytest.mark.asyncio
    async def test_status_change_appends_history(self, appointment_service, store):
        await seed(store, status="scheduled")

        await appointment_service.update_appointment("A1", {"status": "confirmed"}, actor="desk")

        history = (await store.get_by_id(APPOINTMENTS, "A1")).data["history"]
        assert [h["action"] for h in history] == ["created", "status_changed"]
        assert history[1]["fromStatus"] == "scheduled"
        assert history[1]["toStatus"] == "confirmed"
        assert history[1]["actor"] == "desk"

    @pytest.mark.asyncio
    async def test_backwards_move_rejected_and_not_persisted(self, appointment_service, store):
        await seed(store, status="in_progress")

        with pytest.raises(InvalidStatusTransitionError):
            await appointment_service.update_appointment("A1", {"status": "pending"})

        assert (await store.get_by_id(APPOINTMENTS, "A1")).data["status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_supplied_history_is_ignored(self, appointment_service, store):
        await seed(store)

        await appointment_service.update_appointment("A1", {"notes": "bring photo", "history": []})

        doc = await store.get_by_id(APPOINTMENTS, "A1")
        assert doc.data["notes"] == "bring photo"
        assert [h["action"] for h in doc.data["history"]] == ["created", "updated"]

    @pytest.mark.asyncio
    async def test_reassigned_stylist_moves_ownership(self, appointment_service, store):
        first = await appointment_service.create_appointment(
            {**BOOKING, "serviceStylistPairs": BOOKING["serviceStylistPairs"][1:]}
        )
        second = await appointment_service.create_appointment(
            {**BOOKING, "time": "15:00", "serviceStylistPairs": BOOKING["serviceStylistPairs"][:1]}
        )

        await appointment_service.update_appointment(
            second,
            {"serviceStylistPairs": [{**BOOKING["serviceStylistPairs"][0], "stylistId": "S2"}]},
        )

        doc = await store.get_by_id(APPOINTMENTS, second)
        assert doc.data["stylistId"] == "S2"
        assert doc.data["stylistIds"] == ["S2"]
        s2 = await appointment_service.get_appointments("S2", OwnerRole.STYLIST)
        assert {a.id for a in s2} == {first, second}
        assert await appointment_service.get_appointments("S1", OwnerRole.STYLIST) == []

    @pytest.mark.asyncio
    async def test_missing_appointment(self, appointment_service):
        with pytest.raises(AppointmentNotFoundError):
            await appointment_service.update_appointment("missing", {"status": "confirmed"})


# ============================================================================
# Cancel
# ============================================================================


class TestCancelAppointment:
    @pytest.mark.asyncio
    async def test_cancel_persists_even_when_transports_fail(
        self, appointment_service, store, push_client, email_client
    ):
        await seed(store, status="confirmed")
        push_client.fail = True
        email_client.fail = True

        await appointment_service.cancel_appointment("A1", "Client is sick")

        doc = await store.get_by_id(APPOINTMENTS, "A1")
        assert doc.data["status"] == "cancelled"
        assert doc.data["cancellationReason"] == "Client is sick"
        assert doc.data["history"][-1]["reason"] == "Client is sick"

        [notification] = await notifications_for(store, "S1")
        assert notification["type"] == "appointment_cancelled"

    @pytest.mark.asyncio
    async def test_cancel_always_dispatches(self, appointment_service, store):
        await seed(store, status="cancelled", cancellationReason="first")

        with patch.object(
            appointment_service.dispatcher, "dispatch", wraps=appointment_service.dispatcher.dispatch
        ) as spy:
            await appointment_service.cancel_appointment("A1", "second")

        assert dispatched_events(spy) == [DispatchEvent.CANCELLED]
        assert spy.call_args.args[1].recipient_id == "S1"

    @pytest.mark.asyncio
    async def test_cancel_completed_rejected(self, appointment_service, store):
        await seed(store, status="completed")

        with pytest.raises(InvalidStatusTransitionError):
            await appointment_service.cancel_appointment("A1", "too late")

    @pytest.mark.asyncio
    async def test_cancel_missing(self, appointment_service):
        with pytest.raises(AppointmentNotFoundError):
            await appointment_service.cancel_appointment("missing", "reason")


# ============================================================================
# Reschedule
# ============================================================================


class TestRescheduleAppointment:
    @pytest.mark.asyncio
    async def test_reschedule_twice_keeps_history(self, appointment_service, store):
        await seed(store, status="confirmed")

        await appointment_service.reschedule_appointment("A1", "2024-07-02", "11:00", notes="traffic")
        await appointment_service.reschedule_appointment("A1", "2024-07-03", "9:30", actor="C1")

        doc = await store.get_by_id(APPOINTMENTS, "A1")
        history = doc.data["history"]
        assert len(history) >= 2
        assert [h["action"] for h in history] == ["created", "rescheduled", "rescheduled"]
        assert history[1]["oldDate"] == "2024-07-01"
        assert history[1]["newDate"] == "2024-07-02"
        assert history[1]["notes"] == "traffic"
        assert history[2]["oldTime"] == "11:00"
        assert history[2]["newTime"] == "09:30"
        assert history[2]["actor"] == "C1"

        assert doc.data["status"] == "scheduled"
        assert doc.data["date"] == "2024-07-03"
        assert doc.data["endTime"] == "10:15"

    @pytest.mark.asyncio
    async def test_reschedule_notifies_stylist(self, appointment_service, store):
        await seed(store, status="pending")

        await appointment_service.reschedule_appointment("A1", "2024-07-02", "11:00")

        [notification] = await notifications_for(store, "S1")
        assert notification["type"] == "appointment_rescheduled"
        assert notification["data"]["oldDate"] == "2024-07-01"
        assert notification["data"]["newTime"] == "11:00"

    @pytest.mark.asyncio
    async def test_reschedule_in_progress_rejected(self, appointment_service, store):
        await seed(store, status="in_progress")

        with pytest.raises(InvalidStatusTransitionError):
            await appointment_service.reschedule_appointment("A1", "2024-07-02", "11:00")

    @pytest.mark.asyncio
    async def test_reschedule_missing(self, appointment_service):
        with pytest.raises(AppointmentNotFoundError):
            await appointment_service.reschedule_appointment("missing", "2024-07-02", "11:00")


# ============================================================================
# Payment, reminders, notifications
# ============================================================================


class TestPaymentAndReminders:
    @pytest.mark.asyncio
    async def test_record_payment_credits_commission(self, appointment_service, store):
        await seed(store, status="completed")

        await appointment_service.record_payment("A1", "gcash", transaction_id="T-1")

        doc = await store.get_by_id(APPOINTMENTS, "A1")
        assert doc.data["paymentStatus"] == "paid"
        assert doc.data["transactionId"] == "T-1"

        [notification] = await notifications_for(store, "S1")
        assert notification["type"] == "transaction_paid"
        assert notification["data"]["commission"] == 210.0

    @pytest.mark.asyncio
    async def test_send_reminder(self, appointment_service, store, local_queue):
        await seed(store)
        appointment = await appointment_service.get_appointment("A1")

        result = await appointment_service.send_reminder(appointment)

        assert result.event == DispatchEvent.REMINDER
        assert len(local_queue) == 0

    @pytest.mark.asyncio
    async def test_mark_read_operations(self, appointment_service, store):
        await seed(store)
        await appointment_service.cancel_appointment("A1", "schedule conflict")
        [notification] = await store.query(NOTIFICATIONS)

        await appointment_service.mark_notification_read(notification.id)
        assert (await store.get_by_id(NOTIFICATIONS, notification.id)).data["isRead"] is True

        assert await appointment_service.mark_all_read("S1") == 0
