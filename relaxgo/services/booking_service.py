from typing import Callable, Dict, List, Optional, Set, Union
from datetime import datetime, date, time as dt_time, timedelta
from zoneinfo import ZoneInfo

from relaxgo.core.config import settings
from relaxgo.core.exceptions import InvalidTransitionError, MissingReferenceError, ValidationError
from relaxgo.core.logger import logger
from relaxgo.core.security import AuthorizationContext
from relaxgo.models.db_models import ApplicationStatus, Booking, BookingStatus
from relaxgo.services.store import Order, RowFilter, Store

# Edges a provider may take. Completion is done by the sweep, never by a caller.
ALLOWED_TRANSITIONS: Dict[BookingStatus, Set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.DECLINED},
}

# Statuses a provider still has to act on or show up for
ACTIONABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

TIME_FORMATS = ("%H:%M", "%H:%M:%S")


class BookingService:
    """
    Booking lifecycle controller.
    Validates and applies status transitions; the store stays the only
    holder of a booking's status.
    """

    def __init__(self, store: Store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.tz = ZoneInfo(settings.TIMEZONE)
        self._clock = clock

    def now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(self.tz)

    def build_scheduled_time(self, day: Union[str, date], time: Union[str, dt_time]) -> datetime:
        """
        Combine a calendar date (YYYY-MM-DD) and a time of day (HH:MM) into
        one local instant.
        """
        if isinstance(day, date):
            day = day.isoformat()
        if isinstance(time, dt_time):
            time = time.strftime("%H:%M:%S")
        for time_format in TIME_FORMATS:
            try:
                return datetime.strptime(f"{day} {time}", f"%Y-%m-%d {time_format}").replace(tzinfo=self.tz)
            except (TypeError, ValueError):
                continue
        logger.warning(f"Date parsing failed for {day} {time}")
        raise ValidationError(f"Invalid date or time: '{day} {time}'. Expected YYYY-MM-DD and HH:MM.")

    async def _ensure_references(self, masseur_id: str, massage_type_id: str):
        masseurs = await self.store.select(
            "masseuses",
            RowFilter().eq("masseuse_id", masseur_id).eq("status", ApplicationStatus.APPROVED),
        )
        if not masseurs:
            raise MissingReferenceError("Masseur", masseur_id)

        massage_types = await self.store.select("massage_types", RowFilter().eq("id", massage_type_id))
        if not massage_types:
            raise MissingReferenceError("Massage type", massage_type_id)

    async def create(self, customer_id: str, masseur_id: str, massage_type_id: str,
                     day: Union[str, date], time: Union[str, dt_time], duration_minutes: int) -> Booking:
        """
        Create a pending booking. Nothing is persisted when validation fails.
        """
        for resource, value in (("Customer", customer_id), ("Masseur", masseur_id),
                                ("Massage type", massage_type_id)):
            if not value:
                raise MissingReferenceError(resource)

        scheduled_time = self.build_scheduled_time(day, time)

        if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int) or duration_minutes <= 0:
            raise ValidationError(f"duration_minutes must be a positive integer, got {duration_minutes!r}")

        await self._ensure_references(masseur_id, massage_type_id)

        logger.info(f"📥 Booking Request - customer {customer_id}, masseur {masseur_id}, at {scheduled_time}")
        row = await self.store.insert("bookings", {
            "customer_id": customer_id,
            "masseur_id": masseur_id,
            "massage_type_id": massage_type_id,
            "scheduled_time": scheduled_time.isoformat(),
            "duration_minutes": duration_minutes,
            "status": BookingStatus.PENDING.value,
            "created_at": self.now().isoformat(),
        })
        booking = Booking.from_row(row)
        logger.info(f"✅ Booking {booking.id} created (pending)")
        return booking

    async def get(self, booking_id: str) -> Booking:
        rows = await self.store.select("bookings", RowFilter().eq("id", booking_id))
        if not rows:
            raise MissingReferenceError("Booking", booking_id)
        return Booking.from_row(rows[0])

    async def transition(self, booking_id: str, ctx: AuthorizationContext,
                         new_status: Union[str, BookingStatus]) -> Booking:
        """
        Move a booking along an allowed edge on behalf of its masseur.

        The write is conditional on the status the request was validated
        against, so of two racing calls only one commits; the other gets
        InvalidTransitionError.
        """
        try:
            target = BookingStatus(new_status)
        except ValueError:
            raise InvalidTransitionError(None, str(new_status), "unknown status") from None

        booking = await self.get(booking_id)
        current = booking.status

        if not ctx.is_provider:
            raise InvalidTransitionError(current.value, target.value, "provider capability required")
        if ctx.identity_id != booking.masseur_id:
            raise InvalidTransitionError(current.value, target.value, "not the assigned masseur")
        if target not in ALLOWED_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(current.value, target.value)

        affected = await self.store.update(
            "bookings",
            RowFilter().eq("id", booking.id).eq("status", current),
            {"status": target.value},
        )
        if affected == 0:
            logger.warning(f"⚠️ Booking {booking.id} changed concurrently, {target.value} not applied")
            raise InvalidTransitionError(current.value, target.value, "booking changed concurrently")

        logger.info(f"🔄 Booking {booking.id}: {current.value} -> {target.value} by {ctx.identity_id}")
        return booking.model_copy(update={"status": target})

    async def working_set(self, masseur_id: str) -> List[Booking]:
        """Upcoming pending/confirmed bookings of one masseur, soonest first."""
        rows = await self.store.select(
            "bookings",
            RowFilter()
            .eq("masseur_id", masseur_id)
            .in_("status", ACTIONABLE_STATUSES)
            .gte("scheduled_time", self.now()),
            order_by=Order("scheduled_time"),
        )
        return [Booking.from_row(r) for r in rows]

    async def list_for_customer(self, customer_id: str) -> List[Booking]:
        rows = await self.store.select(
            "bookings",
            RowFilter().eq("customer_id", customer_id),
            order_by=Order("scheduled_time", desc=True),
        )
        return [Booking.from_row(r) for r in rows]

    async def complete_elapsed(self) -> List[Booking]:
        """
        Mark confirmed bookings as completed once their slot plus the grace
        period has passed.
        """
        grace = timedelta(minutes=settings.COMPLETION_GRACE_MINUTES)
        now = self.now()
        rows = await self.store.select(
            "bookings",
            RowFilter().eq("status", BookingStatus.CONFIRMED).lte("scheduled_time", now - grace),
        )

        completed = []
        for row in rows:
            booking = Booking.from_row(row)
            if booking.scheduled_time + timedelta(minutes=booking.duration_minutes) + grace > now:
                continue
            affected = await self.store.update(
                "bookings",
                RowFilter().eq("id", booking.id).eq("status", BookingStatus.CONFIRMED),
                {"status": BookingStatus.COMPLETED.value},
            )
            if affected:
                completed.append(booking.model_copy(update={"status": BookingStatus.COMPLETED}))

        if completed:
            logger.info(f"🏁 Completed {len(completed)} elapsed booking(s)")
        return completed
