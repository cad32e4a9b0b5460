import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from relaxgo.core.config import settings
from relaxgo.core.exceptions import TransientIOError
from relaxgo.core.logger import logger
from relaxgo.services.notification_bus import ChangeNotificationBus, EventCallback, SubscriptionHandle
from relaxgo.services.store import RowFilter


@dataclass(frozen=True)
class ReconciliationPolicy:
    """
    How a client keeps its local view aligned with the store.

    Push is always primary. `poll_interval` bounds staleness when a push is
    lost (None disables polling), and `resync_on_reconnect` re-queries after
    the bus reopens a dropped channel.
    """
    poll_interval: Optional[float] = None
    resync_on_reconnect: bool = True

    @classmethod
    def for_provider(cls) -> "ReconciliationPolicy":
        return cls(poll_interval=settings.PROVIDER_POLL_INTERVAL_SECONDS)

    @classmethod
    def for_customer(cls) -> "ReconciliationPolicy":
        return cls(poll_interval=settings.CUSTOMER_POLL_INTERVAL_SECONDS)

    @classmethod
    def push_only(cls) -> "ReconciliationPolicy":
        """Legacy customer behavior: a missed push stays missed until a manual refresh."""
        return cls(poll_interval=None, resync_on_reconnect=False)


class Reconciler:
    """Binds a policy to one bus channel and one refresh coroutine."""

    def __init__(self, bus: ChangeNotificationBus, policy: ReconciliationPolicy, table: str,
                 predicate: RowFilter, on_event: EventCallback,
                 refresh: Callable[[], Awaitable[None]], name: str):
        self.bus = bus
        self.policy = policy
        self.table = table
        self.predicate = predicate
        self.on_event = on_event
        self.refresh = refresh
        self.name = name
        self.handle: Optional[SubscriptionHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None

    async def start(self):
        """
        Open the channel, then read. A commit that lands before the channel
        is live is picked up by the read; later commits arrive as pushes.
        """
        try:
            await self._subscribe()
        except TransientIOError as e:
            # Keep trying in the background; the poll (if any) covers the gap
            logger.warning(f"⚠️ [{self.name}] initial subscribe failed: {e}")
            self._connect_task = asyncio.create_task(self._connect_loop())
        await self.refresh_safely("subscribed")

        if self.policy.poll_interval:
            self._poll_task = asyncio.create_task(self._poll_loop(self.policy.poll_interval))

    async def _subscribe(self):
        self.handle = await self.bus.subscribe(
            self.table, self.predicate, self.on_event, on_resubscribed=self._on_resubscribed
        )

    async def _connect_loop(self):
        delay = self.bus.initial_delay
        while True:
            await asyncio.sleep(delay)
            try:
                await self._subscribe()
            except TransientIOError as e:
                delay = min(delay * 2, self.bus.max_delay)
                logger.warning(f"⚠️ [{self.name}] subscribe retry failed: {e}")
                continue
            try:
                await self.refresh_safely("subscribed")
            except Exception:
                logger.exception(f"❌ [{self.name}] refresh after late subscribe failed")
            return

    async def _on_resubscribed(self):
        if self.policy.resync_on_reconnect:
            await self.refresh_safely("reconnect")

    async def _poll_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_safely("poll")
            except Exception:
                # One bad refresh must not end the staleness bound
                logger.exception(f"❌ [{self.name}] poll refresh failed")

    async def refresh_safely(self, reason: str) -> bool:
        """Refresh, keeping the previous view when the store is unreachable."""
        try:
            await self.refresh()
            return True
        except TransientIOError as e:
            logger.warning(f"⚠️ [{self.name}] {reason} refresh failed, keeping stale view: {e}")
            return False

    async def stop(self):
        for task in (self._poll_task, self._connect_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._connect_task = None
        if self.handle:
            await self.bus.unsubscribe(self.handle)
            self.handle = None
