import asyncio
from typing import Optional

from relaxgo.core.config import settings
from relaxgo.core.exceptions import TransientIOError
from relaxgo.core.logger import logger
from relaxgo.services.booking_service import BookingService


async def completion_loop(booking_service: BookingService, stop_event: asyncio.Event,
                          interval: Optional[float] = None):
    """Periodically moves elapsed confirmed bookings to completed."""
    interval = interval if interval is not None else settings.COMPLETION_SWEEP_INTERVAL_SECONDS
    logger.info(f"⏱️ Completion sweep running every {interval:.0f}s")
    while not stop_event.is_set():
        try:
            await booking_service.complete_elapsed()
        except TransientIOError as e:
            logger.warning(f"⚠️ Completion sweep skipped: {e}")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
