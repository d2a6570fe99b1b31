"""
Unit tests for the live appointment sync engine.

Coverage:
- Ordering (date desc, time desc)
- Initial snapshot and change batches
- Stylist rescan merge
- Serialized remaps: superseded batches are dropped
- Liveness guard after unsubscribe
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from booking.models import Appointment
from booking.services.appointment_mapper import AppointmentMapper
from booking.services.appointment_query_service import AppointmentQueryService
from booking.services.live_sync_service import (
    LiveSubscription,
    LiveSyncService,
    sort_appointments,
)
from database.document_store import APPOINTMENTS, StoreDocument
from database.models import OwnerRole


def appt(appointment_id, date, time):
    return Appointment(id=appointment_id, date=date, time=time)


class TestSortAppointments:
    def test_later_date_first(self):
        ordered = sort_appointments([appt("a", "2024-01-01", "10:00"), appt("b", "2024-02-01", "09:00")])
        assert [a.id for a in ordered] == ["b", "a"]

    def test_same_date_later_time_first(self):
        ordered = sort_appointments([
            appt("a", "2024-01-01", "09:00"),
            appt("b", "2024-01-01", "14:30"),
            appt("c", "2024-01-01", "10:15"),
        ])
        assert [a.id for a in ordered] == ["b", "c", "a"]

    def test_order_is_total(self):
        items = [appt("x", "2024-01-01", "09:00"), appt("y", "2024-01-01", "09:00")]
        assert sort_appointments(items) == sort_appointments(list(reversed(items)))


class TestLiveSyncService:
    @pytest.mark.asyncio
    async def test_snapshot_is_mapped_and_sorted(self, store):
        await store.create(APPOINTMENTS, {"clientId": "C1", "date": "2024-01-01", "time": "9:00"}, doc_id="old")
        await store.create(APPOINTMENTS, {"clientId": "C1", "date": "2024-03-01", "time": "10:00"}, doc_id="new")
        await store.create(APPOINTMENTS, {"clientId": "C1", "date": "2024-03-01", "time": "15:00"}, doc_id="newest")
        received = []

        LiveSyncService(store).subscribe("C1", OwnerRole.CLIENT, received.append)
        await store.wait_idle()

        assert len(received) == 1
        assert [a.id for a in received[0]] == ["newest", "new", "old"]
        assert received[0][2].time == "09:00"

    @pytest.mark.asyncio
    async def test_change_triggers_new_batch(self, store):
        received = []
        LiveSyncService(store).subscribe("C1", OwnerRole.CLIENT, received.append)
        await store.wait_idle()

        await store.create(APPOINTMENTS, {"clientId": "C1", "date": "2024-05-01"}, doc_id="A1")
        await store.wait_idle()

        assert [len(batch) for batch in received] == [0, 1]

    @pytest.mark.asyncio
    async def test_stylist_batches_include_unindexed_records(self, store):
        await store.create(APPOINTMENTS, {"stylistId": "S1", "date": "2024-01-01"}, doc_id="direct")
        await store.create(
            APPOINTMENTS,
            {"serviceStylistPairs": [{"stylistId": "S1"}], "date": "2024-02-01"},
            doc_id="pairs",
        )
        received = []

        LiveSyncService(store).subscribe("S1", OwnerRole.STYLIST, received.append)
        await store.wait_idle()

        assert [a.id for a in received[-1]] == ["pairs", "direct"]

    @pytest.mark.asyncio
    async def test_async_callback_supported(self, store):
        received = []

        async def callback(appointments):
            received.append(appointments)

        LiveSyncService(store).subscribe("C1", OwnerRole.CLIENT, callback)
        await store.wait_idle()

        assert received == [[]]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_break_subscription(self, store):
        calls = []

        def callback(appointments):
            calls.append(len(appointments))
            raise ValueError("screen crashed")

        LiveSyncService(store).subscribe("C1", OwnerRole.CLIENT, callback)
        await store.wait_idle()
        await store.create(APPOINTMENTS, {"clientId": "C1"})
        await store.wait_idle()

        assert calls == [0, 1]

    @pytest.mark.asyncio
    async def test_unsubscribe_is_idempotent(self, store):
        received = []
        unsubscribe = LiveSyncService(store).subscribe("C1", OwnerRole.CLIENT, received.append)
        await store.wait_idle()

        unsubscribe()
        unsubscribe()
        await store.create(APPOINTMENTS, {"clientId": "C1"})
        await store.wait_idle()

        assert len(received) == 1


class TestLiveSubscriptionGuards:
    def make_subscription(self, store, callback, mapper=None):
        return LiveSubscription(
            "C1",
            OwnerRole.CLIENT,
            callback,
            mapper or AppointmentMapper(store),
            AppointmentQueryService(store),
        )

    @pytest.mark.asyncio
    async def test_superseded_batch_is_dropped(self, store):
        gate = asyncio.Event()
        received = []

        async def map_many(docs):
            if docs and docs[0].id == "first":
                await gate.wait()
            return [Appointment(id=d.id) for d in docs]

        mapper = MagicMock()
        mapper.map_many = AsyncMock(side_effect=map_many)
        subscription = self.make_subscription(store, received.append, mapper)

        first = asyncio.create_task(subscription.on_batch([StoreDocument("first", {})]))
        await asyncio.sleep(0)
        second = asyncio.create_task(subscription.on_batch([StoreDocument("second", {})]))
        await asyncio.sleep(0)
        gate.set()
        await asyncio.gather(first, second)

        assert [[a.id for a in batch] for batch in received] == [["second"]]

    @pytest.mark.asyncio
    async def test_no_callback_after_unsubscribe_mid_remap(self, store):
        received = []
        subscription = self.make_subscription(store, received.append)

        async def map_many(docs):
            subscription.unsubscribe()
            return []

        subscription.mapper = MagicMock()
        subscription.mapper.map_many = AsyncMock(side_effect=map_many)

        await subscription.on_batch([StoreDocument("A1", {"clientId": "C1"})])

        assert received == []
        assert subscription.active is False

    @pytest.mark.asyncio
    async def test_subscription_error_is_logged_not_raised(self, store, caplog):
        subscription = self.make_subscription(store, lambda appointments: None)

        subscription.on_error(RuntimeError("listener lost"))

        assert "not retrying" in caplog.text
