import asyncio
import inspect
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from relaxgo.core.config import settings
from relaxgo.core.exceptions import TransientIOError
from relaxgo.core.logger import logger
from relaxgo.models.db_models import ChangeEvent
from relaxgo.services.store import EventStream, RowFilter, Store

EventCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
ResubscribeCallback = Callable[[], Union[None, Awaitable[None]]]


async def _call(callback: Callable[..., Any], *args):
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SubscriptionHandle:
    def __init__(self, table: str, predicate: Optional[RowFilter], on_event: EventCallback,
                 on_resubscribed: Optional[ResubscribeCallback]):
        self.id = uuid.uuid4().hex[:12]
        self.table = table
        self.predicate = predicate
        self.on_event = on_event
        self.on_resubscribed = on_resubscribed
        self.stream: Optional[EventStream] = None
        self.task: Optional[asyncio.Task] = None
        self.active = True
        self.reconnects = 0

    def __repr__(self) -> str:
        return f"<Subscription {self.id} {self.table} {self.predicate}>"


class ChangeNotificationBus:
    """
    Delivers store change events to filtered subscribers.

    Delivery is at-least-once with no ordering guarantee, so subscribers
    must overwrite their local state from the payload. When a feed drops,
    the bus reopens it with exponential backoff and then calls the
    subscriber's `on_resubscribed` hook so it can re-query whatever it
    missed while disconnected.
    """

    def __init__(self, store: Store, initial_delay: Optional[float] = None,
                 max_delay: Optional[float] = None):
        self.store = store
        self.initial_delay = initial_delay if initial_delay is not None else settings.BUS_RECONNECT_INITIAL_DELAY_SECONDS
        self.max_delay = max_delay if max_delay is not None else settings.BUS_RECONNECT_MAX_DELAY_SECONDS
        self._handles: Dict[str, SubscriptionHandle] = {}

    async def subscribe(self, table: str, predicate: Optional[RowFilter], on_event: EventCallback,
                        on_resubscribed: Optional[ResubscribeCallback] = None) -> SubscriptionHandle:
        """
        Open a channel. The subscription is live when this returns; raises
        TransientIOError when the feed cannot be opened at all.
        """
        handle = SubscriptionHandle(table, predicate, on_event, on_resubscribed)
        handle.stream = await self.store.subscribe(table, predicate)
        handle.task = asyncio.create_task(self._pump(handle))
        self._handles[handle.id] = handle
        logger.info(f"📡 Subscribed {handle}")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle):
        if not handle.active:
            return
        handle.active = False
        self._handles.pop(handle.id, None)
        task = handle.task
        if task and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if handle.stream:
            await handle.stream.aclose()
        logger.info(f"🔕 Unsubscribed {handle}")

    async def close(self):
        for handle in list(self._handles.values()):
            await self.unsubscribe(handle)

    @property
    def active_subscriptions(self) -> int:
        return len(self._handles)

    async def _pump(self, handle: SubscriptionHandle):
        while handle.active:
            try:
                async for event in handle.stream:
                    row = event.new_row or event.old_row
                    if handle.predicate is not None and not handle.predicate.matches(row):
                        continue
                    await self._dispatch(handle, event)
                return
            except TransientIOError as e:
                logger.warning(f"⚠️ {handle} lost its feed: {e}")

            await handle.stream.aclose()
            await self._reconnect(handle)

    async def _reconnect(self, handle: SubscriptionHandle):
        delay = self.initial_delay
        while handle.active:
            await asyncio.sleep(delay)
            try:
                handle.stream = await self.store.subscribe(handle.table, handle.predicate)
            except TransientIOError as e:
                delay = min(delay * 2, self.max_delay)
                logger.warning(f"⚠️ Resubscribe of {handle} failed, retrying in {delay:.1f}s: {e}")
                continue

            handle.reconnects += 1
            logger.info(f"🔁 Resubscribed {handle} (reconnect #{handle.reconnects})")
            if handle.on_resubscribed:
                try:
                    await _call(handle.on_resubscribed)
                except Exception:
                    logger.exception(f"❌ on_resubscribed hook of {handle} failed")
            return

    async def _dispatch(self, handle: SubscriptionHandle, event: ChangeEvent):
        try:
            await _call(handle.on_event, event)
        except Exception:
            # A failing consumer must not tear down the channel
            logger.exception(f"❌ Subscriber of {handle} failed on {event.mutation_type.value}")
