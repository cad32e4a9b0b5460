import asyncio
from unittest.mock import AsyncMock

import pytest

from relaxgo.core.exceptions import TransientIOError
from relaxgo.models.db_models import MutationType
from relaxgo.services.store import RowFilter

from conftest import MASSEUR_ID, OTHER_MASSEUR_ID


def _booking_row(masseur_id, status="pending"):
    return {
        "customer_id": "cust-1",
        "masseur_id": masseur_id,
        "massage_type_id": "deep-tissue",
        "scheduled_time": "2024-06-01T14:00:00+03:00",
        "duration_minutes": 60,
        "status": status,
    }


@pytest.mark.asyncio
async def test_subscriber_only_sees_matching_rows(store, bus, eventually):
    mine, everything = [], []
    await bus.subscribe("bookings", RowFilter().eq("masseur_id", MASSEUR_ID), mine.append)
    await bus.subscribe("bookings", None, everything.append)

    await store.insert("bookings", _booking_row(MASSEUR_ID))
    await store.insert("bookings", _booking_row(OTHER_MASSEUR_ID))
    await store.insert("massage_types", {"id": "swedish"})

    await eventually(lambda: len(everything) == 2)
    assert [e.new_row["masseur_id"] for e in mine] == [MASSEUR_ID]
    assert all(e.table == "bookings" for e in everything)
    await bus.close()


@pytest.mark.asyncio
async def test_update_event_carries_new_and_old_row(store, bus, eventually):
    received = []
    row = await store.insert("bookings", _booking_row(MASSEUR_ID))
    await bus.subscribe("bookings", RowFilter().eq("id", row["id"]), received.append)

    await store.update("bookings", RowFilter().eq("id", row["id"]), {"status": "confirmed"})

    await eventually(lambda: len(received) == 1)
    event = received[0]
    assert event.mutation_type == MutationType.UPDATE
    assert event.new_row["status"] == "confirmed"
    assert event.old_row["status"] == "pending"
    await bus.close()


@pytest.mark.asyncio
async def test_async_consumers_are_awaited(store, bus, eventually):
    consumer = AsyncMock()
    await bus.subscribe("bookings", None, consumer)

    await store.insert("bookings", _booking_row(MASSEUR_ID))

    await eventually(lambda: consumer.await_count == 1)
    await bus.close()


@pytest.mark.asyncio
async def test_failing_consumer_does_not_kill_the_feed(store, bus, eventually):
    seen = []

    def flaky(event):
        seen.append(event)
        if len(seen) == 1:
            raise RuntimeError("render crashed")

    handle = await bus.subscribe("bookings", None, flaky)

    await store.insert("bookings", _booking_row(MASSEUR_ID))
    await store.insert("bookings", _booking_row(MASSEUR_ID))

    await eventually(lambda: len(seen) == 2)
    assert handle.active
    await bus.close()


@pytest.mark.asyncio
async def test_unsubscribe_releases_store_channel(store, bus, eventually):
    received = []
    handle = await bus.subscribe("bookings", None, received.append)
    assert store.subscriber_count() == 1
    assert bus.active_subscriptions == 1

    await bus.unsubscribe(handle)
    await store.insert("bookings", _booking_row(MASSEUR_ID))
    await asyncio.sleep(0.02)

    assert store.subscriber_count() == 0
    assert bus.active_subscriptions == 0
    assert received == []
    assert handle.task.done()

    # Second unsubscribe is a no-op
    await bus.unsubscribe(handle)


@pytest.mark.asyncio
async def test_subscribe_fails_when_feed_unavailable(store, bus):
    store.available = False

    with pytest.raises(TransientIOError):
        await bus.subscribe("bookings", None, lambda e: None)
    assert bus.active_subscriptions == 0


@pytest.mark.asyncio
async def test_reconnect_resubscribes_and_calls_hook(store, bus, eventually):
    received = []
    resubscribed = AsyncMock()
    handle = await bus.subscribe("bookings", None, received.append, on_resubscribed=resubscribed)

    store.disconnect()
    assert store.subscriber_count() == 0

    await eventually(lambda: resubscribed.await_count == 1)
    assert handle.reconnects == 1
    assert store.subscriber_count() == 1

    await store.insert("bookings", _booking_row(MASSEUR_ID))
    await eventually(lambda: len(received) == 1)
    await bus.close()


@pytest.mark.asyncio
async def test_reconnect_backs_off_while_store_is_down(store, bus, eventually):
    resubscribed = AsyncMock()
    handle = await bus.subscribe("bookings", None, lambda e: None, on_resubscribed=resubscribed)

    store.available = False
    store.disconnect()
    await asyncio.sleep(0.1)
    assert resubscribed.await_count == 0
    assert handle.reconnects == 0

    store.available = True
    await eventually(lambda: resubscribed.await_count == 1)
    assert handle.reconnects == 1
    await bus.close()


@pytest.mark.asyncio
async def test_redelivered_event_reaches_subscriber_again(store, bus, eventually):
    received = []
    await bus.subscribe("bookings", None, received.append)

    await store.insert("bookings", _booking_row(MASSEUR_ID))
    store.replay_last()

    await eventually(lambda: len(received) == 2)
    assert received[0] == received[1]
    await bus.close()
