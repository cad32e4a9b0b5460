import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from relaxgo.core.exceptions import AuthorizationError, InvalidTransitionError
from relaxgo.models.db_models import BookingStatus, MutationType
from relaxgo.services.provider_session import ProviderSession
from relaxgo.services.reconciliation import ReconciliationPolicy

from conftest import CUSTOMER_ID, MASSAGE_TYPE_ID, MASSEUR_ID, NOW, OTHER_MASSEUR_ID


async def _create(booking_service, masseur_id=MASSEUR_ID, day="2024-06-01", time="14:00"):
    return await booking_service.create(CUSTOMER_ID, masseur_id, MASSAGE_TYPE_ID, day, time, 60)


@pytest.mark.asyncio
async def test_start_loads_own_upcoming_bookings_soonest_first(provider_ctx, booking_service, bus):
    later = await _create(booking_service, day="2024-06-03")
    sooner = await _create(booking_service, day="2024-06-01")
    await _create(booking_service, masseur_id=OTHER_MASSEUR_ID)

    session = ProviderSession(provider_ctx, booking_service, bus, ReconciliationPolicy(poll_interval=None))
    await session.start()

    assert [b.id for b in session.working_set] == [sooner.id, later.id]
    assert session.last_refreshed_at == NOW
    await session.close()


@pytest.mark.asyncio
async def test_new_booking_push_triggers_requery(provider_ctx, booking_service, bus, eventually):
    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=None)) as session:
        assert session.working_set == []
        refreshes = session.refresh_count

        booking = await _create(booking_service)

        await eventually(lambda: session.find(booking.id) is not None)
        assert session.refresh_count > refreshes


@pytest.mark.asyncio
async def test_other_masseurs_bookings_do_not_wake_session(provider_ctx, booking_service, bus):
    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=None)) as session:
        refreshes = session.refresh_count
        await _create(booking_service, masseur_id=OTHER_MASSEUR_ID)
        await asyncio.sleep(0.02)

        assert session.refresh_count == refreshes
        assert session.working_set == []


@pytest.mark.asyncio
async def test_confirm_keeps_booking_and_decline_drops_it(provider_ctx, booking_service, bus):
    keep = await _create(booking_service, time="10:00")
    drop = await _create(booking_service, time="12:00")

    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=None)) as session:
        confirmed = await session.confirm(keep.id)
        await session.decline(drop.id)

        assert confirmed.status == BookingStatus.CONFIRMED
        assert [b.id for b in session.working_set] == [keep.id]
        assert session.find(keep.id).status == BookingStatus.CONFIRMED
        assert session.find(drop.id) is None


@pytest.mark.asyncio
async def test_duplicate_confirm_commits_one_write(provider_ctx, booking_service, bus, store):
    booking = await _create(booking_service)

    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=None)) as session:
        results = await asyncio.gather(
            session.confirm(booking.id), session.confirm(booking.id), return_exceptions=True
        )

    assert sum(isinstance(r, InvalidTransitionError) for r in results) == 1
    assert len([e for e in store.history if e.mutation_type == MutationType.UPDATE]) == 1


@pytest.mark.asyncio
async def test_poll_recovers_lost_push(provider_ctx, booking_service, bus, store, eventually):
    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=0.02)) as session:
        store.drop_next_events(1)
        booking = await _create(booking_service)

        await eventually(lambda: session.find(booking.id) is not None)


@pytest.mark.asyncio
async def test_outage_keeps_stale_working_set(provider_ctx, booking_service, bus, store):
    booking = await _create(booking_service)

    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=None)) as session:
        last_refresh = session.last_refreshed_at
        store.available = False

        assert await session.sync() is False
        assert [b.id for b in session.working_set] == [booking.id]
        assert session.last_refreshed_at == last_refresh

        store.available = True
        assert await session.sync() is True


@pytest.mark.asyncio
async def test_start_during_outage_connects_later(provider_ctx, booking_service, bus, store, eventually):
    store.available = False
    session = ProviderSession(provider_ctx, booking_service, bus, ReconciliationPolicy(poll_interval=None))
    await session.start()
    assert session.working_set == []
    assert store.subscriber_count() == 0

    store.available = True
    await eventually(lambda: store.subscriber_count() == 1)

    booking = await _create(booking_service)
    await eventually(lambda: session.find(booking.id) is not None)
    await session.close()


@pytest.mark.asyncio
async def test_working_set_excludes_past_bookings(provider_ctx, booking_service, bus):
    past = NOW - timedelta(days=1)
    await _create(booking_service, day=past.date().isoformat())

    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=None)) as session:
        assert session.working_set == []


@pytest.mark.asyncio
async def test_customers_cannot_open_provider_session(customer_ctx, booking_service, bus, store):
    session = ProviderSession(customer_ctx, booking_service, bus)

    with pytest.raises(AuthorizationError):
        await session.start()
    assert store.subscriber_count() == 0


@pytest.mark.asyncio
async def test_close_stops_polling_and_releases_channel(provider_ctx, booking_service, bus, store):
    session = ProviderSession(provider_ctx, booking_service, bus, ReconciliationPolicy(poll_interval=0.01))
    await session.start()
    await session.close()
    refreshes = session.refresh_count

    await asyncio.sleep(0.05)

    assert session.refresh_count == refreshes
    assert store.subscriber_count() == 0


@pytest.mark.asyncio
async def test_booking_created_while_subscribing_is_loaded(provider_ctx, booking_service, bus):
    open_channel = bus.subscribe
    created = []

    async def book_then_subscribe(*args, **kwargs):
        created.append(await _create(booking_service))
        return await open_channel(*args, **kwargs)

    session = ProviderSession(provider_ctx, booking_service, bus, ReconciliationPolicy(poll_interval=5.0))
    with patch.object(bus, "subscribe", new=book_then_subscribe):
        await session.start()

    assert [b.id for b in session.working_set] == [created[0].id]
    await session.close()


@pytest.mark.asyncio
async def test_poll_survives_unexpected_refresh_error(provider_ctx, booking_service, bus, store, eventually):
    real_working_set = booking_service.working_set
    failures = []

    async def fails_once(masseur_id):
        if not failures:
            failures.append(masseur_id)
            raise RuntimeError("malformed row")
        return await real_working_set(masseur_id)

    async with ProviderSession(provider_ctx, booking_service, bus,
                               ReconciliationPolicy(poll_interval=0.02)) as session:
        with patch.object(booking_service, "working_set", new=fails_once):
            await eventually(lambda: failures)

            # The push is lost, only the next poll can find it
            store.drop_next_events(1)
            booking = await _create(booking_service)

            await eventually(lambda: session.find(booking.id) is not None)
            assert not session._reconciler._poll_task.done()
