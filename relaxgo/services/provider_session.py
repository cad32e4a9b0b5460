import asyncio
from datetime import datetime
from typing import List, Optional

from relaxgo.core.logger import logger
from relaxgo.core.security import AuthorizationContext
from relaxgo.models.db_models import Booking, BookingStatus, ChangeEvent
from relaxgo.services.booking_service import BookingService
from relaxgo.services.identity_service import PROVIDER
from relaxgo.services.notification_bus import ChangeNotificationBus
from relaxgo.services.reconciliation import ReconciliationPolicy, Reconciler
from relaxgo.services.store import RowFilter


class ProviderSession:
    """
    A masseur's working set: upcoming pending/confirmed bookings.

    Any push on the masseur's channel triggers a full re-query instead of
    merging the event, so ordering and duplicates do not matter. The poll
    timer and the session's own transitions trigger the same re-query.
    """

    def __init__(self, ctx: AuthorizationContext, booking_service: BookingService,
                 bus: ChangeNotificationBus, policy: Optional[ReconciliationPolicy] = None):
        self.ctx = ctx
        self.booking_service = booking_service
        self.bus = bus
        self.policy = policy or ReconciliationPolicy.for_provider()
        self.working_set: List[Booking] = []
        self.last_refreshed_at: Optional[datetime] = None
        self.refresh_count = 0
        self._refresh_lock = asyncio.Lock()
        self._reconciler: Optional[Reconciler] = None

    async def start(self):
        self.ctx.require(PROVIDER)
        self._reconciler = Reconciler(
            self.bus, self.policy, "bookings", RowFilter().eq("masseur_id", self.ctx.identity_id),
            on_event=self._handle_event, refresh=self.refresh,
            name=f"provider {self.ctx.identity_id}",
        )
        await self._reconciler.start()

    async def _handle_event(self, event: ChangeEvent):
        logger.debug(f"📨 Provider {self.ctx.identity_id} got {event.mutation_type.value}, re-querying")
        await self._reconciler.refresh_safely("push")

    async def refresh(self):
        async with self._refresh_lock:
            self.working_set = await self.booking_service.working_set(self.ctx.identity_id)
            self.last_refreshed_at = self.booking_service.now()
            self.refresh_count += 1

    async def sync(self) -> bool:
        """Manual pull-to-refresh. Returns False and keeps the old set when the store is down."""
        if self._reconciler:
            return await self._reconciler.refresh_safely("manual")
        await self.refresh()
        return True

    def find(self, booking_id: str) -> Optional[Booking]:
        return next((b for b in self.working_set if b.id == str(booking_id)), None)

    async def confirm(self, booking_id: str) -> Booking:
        return await self._transition(booking_id, BookingStatus.CONFIRMED)

    async def decline(self, booking_id: str) -> Booking:
        return await self._transition(booking_id, BookingStatus.DECLINED)

    async def _transition(self, booking_id: str, status: BookingStatus) -> Booking:
        booking = await self.booking_service.transition(booking_id, self.ctx, status)
        if self._reconciler:
            await self._reconciler.refresh_safely("own transition")
        else:
            await self.refresh()
        return booking

    async def close(self):
        if self._reconciler:
            await self._reconciler.stop()
            self._reconciler = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, *exc):
        await self.close()
