from typing import Callable, List, Optional, Union
from datetime import date, time as dt_time

from relaxgo.core.exceptions import AuthorizationError
from relaxgo.core.logger import logger
from relaxgo.core.security import AuthorizationContext
from relaxgo.models.db_models import Booking, BookingStatus, ChangeEvent, MutationType
from relaxgo.services.booking_service import BookingService
from relaxgo.services.identity_service import CUSTOMER
from relaxgo.services.notification_bus import ChangeNotificationBus
from relaxgo.services.reconciliation import ReconciliationPolicy, Reconciler
from relaxgo.services.store import RowFilter

# What the customer screen shows for each store status
VIEW_STATES = {
    BookingStatus.PENDING: "awaiting_confirmation",
    BookingStatus.CONFIRMED: "confirmed",
    BookingStatus.DECLINED: "declined",
    BookingStatus.COMPLETED: "completed",
}


class CustomerSession:
    """
    A customer's view of one booking.

    The local copy is only ever overwritten wholesale from the store (push
    event, poll, or manual refresh); it is never edited locally.
    """

    def __init__(self, ctx: AuthorizationContext, booking_service: BookingService,
                 bus: ChangeNotificationBus, policy: Optional[ReconciliationPolicy] = None):
        self.ctx = ctx
        self.booking_service = booking_service
        self.bus = bus
        self.policy = policy or ReconciliationPolicy.for_customer()
        self.booking: Optional[Booking] = None
        self.updates = 0
        self._listeners: List[Callable[[Booking], None]] = []
        self._reconciler: Optional[Reconciler] = None

    @property
    def state(self) -> Optional[str]:
        return VIEW_STATES[self.booking.status] if self.booking else None

    def on_change(self, listener: Callable[[Booking], None]):
        self._listeners.append(listener)

    async def book(self, masseur_id: str, massage_type_id: str, day: Union[str, date],
                   time: Union[str, dt_time], duration_minutes: int) -> Booking:
        self.ctx.require(CUSTOMER)
        booking = await self.booking_service.create(
            self.ctx.identity_id, masseur_id, massage_type_id, day, time, duration_minutes
        )
        self.booking = booking
        await self.watch(booking.id)
        return booking

    async def watch(self, booking_id: str):
        """Follow an existing booking, e.g. when the screen is remounted."""
        await self._stop_reconciler()
        booking = await self.booking_service.get(booking_id)
        if booking.customer_id != self.ctx.identity_id:
            raise AuthorizationError(f"Booking {booking_id} belongs to another customer")
        if self.booking is None or self.booking.id != booking.id:
            self.booking = booking
            self.updates = 0
        else:
            self._apply(booking)

        self._reconciler = Reconciler(
            self.bus, self.policy, "bookings", RowFilter().eq("id", booking_id),
            on_event=self._handle_event, refresh=self.refresh,
            name=f"customer {self.ctx.identity_id}",
        )
        await self._reconciler.start()

    def _handle_event(self, event: ChangeEvent):
        if event.mutation_type == MutationType.DELETE:
            logger.warning(f"⚠️ Booking {self.booking.id if self.booking else '?'} was deleted upstream")
            return
        self._apply(Booking.from_row(event.new_row))

    async def refresh(self):
        if self.booking is None:
            return
        self._apply(await self.booking_service.get(self.booking.id))

    def _apply(self, booking: Booking) -> bool:
        # Redelivered or replayed payloads leave the view untouched
        if booking == self.booking:
            return False
        previous = self.state
        self.booking = booking
        self.updates += 1
        logger.info(f"👀 Customer view of booking {booking.id}: {previous} -> {self.state}")
        for listener in self._listeners:
            listener(booking)
        return True

    async def _stop_reconciler(self):
        if self._reconciler:
            await self._reconciler.stop()
            self._reconciler = None

    async def close(self):
        await self._stop_reconciler()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()
