"""
Unit tests for the multi-channel notification dispatcher.

Coverage:
- Happy path across local push, remote push, email and in-app
- Push token lookup and skip rules
- Per-channel failure isolation (transports, circuit breaker, persistence)
- Templates
"""

from unittest.mock import AsyncMock, patch

import pybreaker
import pytest

from booking.models import ServiceStylistPair
from booking.services.notification_dispatcher import (
    EMAIL,
    IN_APP,
    LOCAL_PUSH,
    REMOTE_PUSH,
    ChannelStatus,
    DispatchContext,
    DispatchError,
    DispatchEvent,
    NotificationDispatcher,
    render,
)
from database.document_store import NOTIFICATIONS
from database.models import OwnerRole
from shared.push_client import PushDeliveryResult


def stylist_ctx(recipient_id="S1", **overrides):
    values = {
        "recipient_id": recipient_id,
        "role": OwnerRole.STYLIST,
        "appointment_id": "A1",
        "client_name": "Ana Cruz",
        "service_name": "Haircut",
        "appointment_date": "2024-01-15",
        "appointment_time": "14:30",
    }
    values.update(overrides)
    return DispatchContext(**values)


# ============================================================================
# Delivery
# ============================================================================


class TestDispatchDelivery:
    @pytest.mark.asyncio
    async def test_all_channels_delivered(self, dispatcher, store, local_queue, push_client, email_client):
        result = await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx())

        assert result.succeeded
        assert [r.channel for r in result.channels] == [LOCAL_PUSH, REMOTE_PUSH, EMAIL, IN_APP]
        assert all(r.status == ChannelStatus.SENT for r in result.channels)

        assert len(local_queue) == 1
        assert local_queue.drain("S1")[0].title == "New Appointment"
        assert push_client.sent[0]["address"] == "ExponentPushToken[stylist-s1]"
        assert push_client.sent[0]["title"] == "New Appointment"
        assert email_client.sent[0]["to_address"] == "maria@salon.test"

        notification = await store.get_by_id(NOTIFICATIONS, result.notification_id)
        assert notification.data["recipientId"] == "S1"
        assert notification.data["type"] == "appointment_created"
        assert notification.data["isRead"] is False
        assert notification.data["readAt"] is None
        assert notification.data["data"]["appointmentId"] == "A1"

    @pytest.mark.asyncio
    async def test_expo_push_token_fallback(self, dispatcher, push_client):
        await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx("S2"))
        assert push_client.sent[0]["address"] == "ExponentPushToken[stylist-s2]"

    @pytest.mark.asyncio
    async def test_missing_token_and_email_are_skipped(self, dispatcher, store, push_client, email_client):
        result = await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx("no-profile"))

        assert result.status_of(REMOTE_PUSH) == ChannelStatus.SKIPPED
        assert result.status_of(EMAIL) == ChannelStatus.SKIPPED
        assert result.status_of(IN_APP) == ChannelStatus.SENT
        assert result.succeeded
        assert push_client.sent == []
        assert email_client.sent == []

    @pytest.mark.asyncio
    async def test_context_email_overrides_profile(self, dispatcher, email_client):
        await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx(email="desk@salon.test"))
        assert email_client.sent[0]["to_address"] == "desk@salon.test"

    @pytest.mark.asyncio
    async def test_reminder_skips_local_push(self, dispatcher, local_queue):
        result = await dispatcher.dispatch(DispatchEvent.REMINDER, stylist_ctx())

        assert result.status_of(LOCAL_PUSH) == ChannelStatus.SKIPPED
        assert len(local_queue) == 0
        assert result.status_of(IN_APP) == ChannelStatus.SENT

    @pytest.mark.asyncio
    async def test_missing_recipient_raises(self, dispatcher):
        with pytest.raises(DispatchError):
            await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx(""))


# ============================================================================
# Failure isolation
# ============================================================================


class TestChannelIsolation:
    @pytest.mark.asyncio
    async def test_transport_failures_do_not_stop_other_channels(
        self, dispatcher, store, local_queue, push_client, email_client
    ):
        push_client.fail = True
        email_client.fail = True

        result = await dispatcher.dispatch(DispatchEvent.CANCELLED, stylist_ctx())

        assert not result.succeeded
        assert result.status_of(LOCAL_PUSH) == ChannelStatus.SENT
        assert result.status_of(REMOTE_PUSH) == ChannelStatus.FAILED
        assert result.status_of(EMAIL) == ChannelStatus.FAILED
        assert result.status_of(IN_APP) == ChannelStatus.SENT
        assert await store.get_by_id(NOTIFICATIONS, result.notification_id) is not None

    @pytest.mark.asyncio
    async def test_rejected_push_ticket_is_failure(self, dispatcher, push_client):
        push_client.send_remote = AsyncMock(
            return_value=PushDeliveryResult(success=False, error="DeviceNotRegistered")
        )

        result = await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx())

        assert result.status_of(REMOTE_PUSH) == ChannelStatus.FAILED
        assert result.channels[1].detail == "DeviceNotRegistered"

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, store, local_queue, push_client, email_client):
        push_circuit = pybreaker.CircuitBreaker(name="open_push", fail_max=1, reset_timeout=60)
        push_circuit.open()
        dispatcher = NotificationDispatcher(
            store,
            local_queue=local_queue,
            push_client=push_client,
            email_client=email_client,
            push_circuit=push_circuit,
            email_circuit=pybreaker.CircuitBreaker(name="closed_email", fail_max=100),
        )

        result = await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx())

        assert result.status_of(REMOTE_PUSH) == ChannelStatus.FAILED
        assert result.channels[1].detail == "circuit open"
        assert push_client.sent == []
        assert result.status_of(EMAIL) == ChannelStatus.SENT

    @pytest.mark.asyncio
    async def test_in_app_failure_is_reported_not_raised(self, dispatcher):
        with patch.object(
            dispatcher.notification_service,
            "create_notification",
            AsyncMock(side_effect=RuntimeError("store down")),
        ):
            result = await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx())

        assert result.status_of(IN_APP) == ChannelStatus.FAILED
        assert result.notification_id is None
        assert result.status_of(EMAIL) == ChannelStatus.SENT

    @pytest.mark.asyncio
    async def test_profile_lookup_failure_still_delivers_in_app(self, dispatcher, store):
        with patch.object(store, "get_by_id", AsyncMock(side_effect=RuntimeError("timeout"))):
            result = await dispatcher.dispatch(DispatchEvent.CREATED, stylist_ctx())

        assert result.status_of(REMOTE_PUSH) == ChannelStatus.SKIPPED
        assert result.status_of(IN_APP) == ChannelStatus.SENT


# ============================================================================
# Templates
# ============================================================================


class TestTemplates:
    def test_created(self):
        message = render(DispatchEvent.CREATED, stylist_ctx())

        assert message.title == "New Appointment"
        assert message.body == "Ana Cruz has booked Haircut on Monday, January 15, 2024 at 2:30 PM."

    def test_created_with_several_services(self):
        services = [
            ServiceStylistPair(service_name="Haircut", service_price=350),
            ServiceStylistPair(service_name="Hair Color", service_price=1200),
        ]
        message = render(DispatchEvent.CREATED, stylist_ctx(services=services, service_name=""))

        assert "has booked 2 services" in message.body
        assert "Hair Color - ₱1,200.00" in message.email_html

    def test_rescheduled_mentions_old_and_new_slot(self):
        message = render(
            DispatchEvent.RESCHEDULED,
            stylist_ctx(old_date="2024-01-15", old_time="14:30", new_date="2024-01-16", new_time="09:00"),
        )

        assert "from Monday, January 15, 2024 at 2:30 PM" in message.body
        assert "to Tuesday, January 16, 2024 at 9:00 AM" in message.body
        assert message.data["newDate"] == "2024-01-16"

    def test_transaction_paid(self):
        message = render(
            DispatchEvent.TRANSACTION_PAID,
            stylist_ctx(total_amount=1000, commission=600, payment_method="cash"),
        )

        assert message.title == "Payment Received"
        assert message.body == "Ana Cruz paid ₱1,000.00 for Haircut. Your commission: ₱600.00"
        assert message.data["commission"] == 600

    def test_client_facing_confirmation(self):
        message = render(DispatchEvent.CONFIRMED, stylist_ctx(role=OwnerRole.CLIENT))
        assert message.body.startswith("Your Haircut appointment on Monday, January 15, 2024")

    def test_email_escapes_html(self):
        message = render(DispatchEvent.CREATED, stylist_ctx(client_name="<script>x</script>"))

        assert "<script>" not in message.email_html
        assert "&lt;script&gt;" in message.email_html

    def test_payload_omits_missing_values(self):
        message = render(DispatchEvent.CREATED, stylist_ctx(appointment_id=None))
        assert "appointmentId" not in message.data
