import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from supabase import create_async_client, AsyncClient

from relaxgo.core.config import settings
from relaxgo.core.exceptions import TransientIOError, ValidationError
from relaxgo.core.logger import logger
from relaxgo.models.db_models import ChangeEvent, MutationType

# Primary key column per table
ID_COLUMNS = {
    "bookings": "id",
    "masseuses": "masseuse_id",
    "massage_types": "id",
    "users": "id",
}

SUBSCRIBE_TIMEOUT_SECONDS = 10.0

# Recent change events kept by MemoryStore for replay and inspection
MEMORY_HISTORY_LIMIT = 1000


def _wire(value: Any) -> Any:
    """Converts a filter value to what PostgREST and stored rows use."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return [_wire(v) for v in value]
    return value


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _parse_instant(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


@dataclass(frozen=True)
class Condition:
    column: str
    op: str  # eq, in_, gte, lte
    value: Any

    def matches(self, row: Dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "eq":
            return _text(actual) == _text(self.value)
        if self.op == "in_":
            return _text(actual) in {_text(v) for v in self.value}
        if actual is None:
            return False
        left = actual
        right = self.value
        if isinstance(right, datetime):
            left = _parse_instant(left)
        if self.op == "gte":
            return left >= right
        if self.op == "lte":
            return left <= right
        raise ValueError(f"Unsupported filter operator: {self.op}")


class RowFilter:
    """
    Conjunction of column conditions.
    Mirrors the Supabase query builder (eq/in_/gte/lte) so the same filter
    can be pushed to PostgREST, to a Realtime channel, or evaluated locally.
    """

    def __init__(self, conditions: Iterable[Condition] = ()):
        self.conditions: Tuple[Condition, ...] = tuple(conditions)

    def _with(self, column: str, op: str, value: Any) -> "RowFilter":
        return RowFilter(self.conditions + (Condition(column, op, value),))

    def eq(self, column: str, value: Any) -> "RowFilter":
        return self._with(column, "eq", value)

    def in_(self, column: str, values: Iterable[Any]) -> "RowFilter":
        return self._with(column, "in_", tuple(values))

    def gte(self, column: str, value: Any) -> "RowFilter":
        return self._with(column, "gte", value)

    def lte(self, column: str, value: Any) -> "RowFilter":
        return self._with(column, "lte", value)

    def matches(self, row: Dict[str, Any]) -> bool:
        return all(c.matches(row) for c in self.conditions)

    __call__ = matches

    def apply(self, query):
        for c in self.conditions:
            query = getattr(query, c.op)(c.column, _wire(c.value))
        return query

    def realtime_filter(self) -> Optional[str]:
        # Realtime channels accept a single equality filter
        for c in self.conditions:
            if c.op == "eq":
                return f"{c.column}=eq.{_wire(c.value)}"
        return None

    def __repr__(self) -> str:
        parts = [f"{c.column} {c.op} {_wire(c.value)!r}" for c in self.conditions]
        return f"RowFilter({' and '.join(parts) or 'all'})"


@dataclass(frozen=True)
class Order:
    column: str
    desc: bool = False


_END = object()


class EventStream:
    """Async iterator over the change events of one store subscription."""

    def __init__(self, on_close: Optional[Callable[[], Awaitable[None]]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, event: ChangeEvent):
        if not self.closed:
            self._queue.put_nowait(event)

    def fail(self, exc: Exception):
        if not self.closed:
            self._queue.put_nowait(exc)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def aclose(self):
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_END)
        if self._on_close:
            await self._on_close()


class Store(ABC):
    """Row storage with a change feed. Single-row consistency, last write wins."""

    @abstractmethod
    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, table: str, row_filter: RowFilter, patch: Dict[str, Any]) -> int:
        """Returns the number of affected rows."""

    @abstractmethod
    async def select(self, table: str, row_filter: Optional[RowFilter] = None,
                     order_by: Optional[Order] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def subscribe(self, table: str, row_filter: Optional[RowFilter] = None) -> EventStream:
        """Opens a change feed. The subscription is live when this returns."""

    async def close(self):
        pass


class SupabaseStore(Store):
    def __init__(self, url: Optional[str] = None, key: Optional[str] = None):
        self._url = url or settings.SUPABASE_URL
        self._key = key or settings.SUPABASE_KEY
        self._client: Optional[AsyncClient] = None

    async def get_client(self) -> AsyncClient:
        if not self._client:
            if not (self._url and self._key):
                logger.warning("⚠️ Supabase credentials missing")
                raise TransientIOError("connect", "Supabase credentials missing")
            try:
                self._client = await create_async_client(self._url, self._key)
                logger.info("✅ Supabase Async client initialized")
            except Exception as e:
                logger.error(f"❌ Failed to initialize Supabase Async: {e}")
                raise TransientIOError("connect", str(e)) from e
        return self._client

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        client = await self.get_client()
        try:
            response = await client.table(table).insert(row).execute()
        except Exception as e:
            logger.error(f"❌ DB Error (insert {table}): {e}")
            raise TransientIOError(f"insert {table}", str(e)) from e
        if not response.data:
            raise TransientIOError(f"insert {table}", "no row returned")
        return response.data[0]

    async def update(self, table: str, row_filter: RowFilter, patch: Dict[str, Any]) -> int:
        client = await self.get_client()
        try:
            query = row_filter.apply(client.table(table).update(patch))
            response = await query.execute()
        except Exception as e:
            logger.error(f"❌ DB Error (update {table} {row_filter}): {e}")
            raise TransientIOError(f"update {table}", str(e)) from e
        return len(response.data or [])

    async def select(self, table: str, row_filter: Optional[RowFilter] = None,
                     order_by: Optional[Order] = None) -> List[Dict[str, Any]]:
        client = await self.get_client()
        try:
            query = client.table(table).select("*")
            if row_filter:
                query = row_filter.apply(query)
            if order_by:
                query = query.order(order_by.column, desc=order_by.desc)
            response = await query.execute()
        except Exception as e:
            logger.error(f"❌ DB Error (select {table} {row_filter}): {e}")
            raise TransientIOError(f"select {table}", str(e)) from e
        return response.data or []

    async def subscribe(self, table: str, row_filter: Optional[RowFilter] = None) -> EventStream:
        client = await self.get_client()
        channel = client.channel(f"{table}-{uuid.uuid4().hex[:12]}")
        stream = EventStream()
        subscribed = asyncio.Event()

        def on_change(payload: Dict[str, Any]):
            event = parse_realtime_payload(table, payload)
            if event:
                stream.push(event)

        def on_status(status, err=None):
            state = str(getattr(status, "value", status))
            if state == "SUBSCRIBED":
                subscribed.set()
            elif state in ("CHANNEL_ERROR", "TIMED_OUT", "CLOSED"):
                logger.warning(f"⚠️ Realtime channel for {table} is {state}: {err}")
                stream.fail(TransientIOError("subscribe", f"channel {state}"))

        options = {"schema": "public", "table": table, "callback": on_change}
        realtime_filter = row_filter.realtime_filter() if row_filter else None
        if realtime_filter:
            options["filter"] = realtime_filter
        channel.on_postgres_changes("*", **options)

        try:
            await channel.subscribe(on_status)
            await asyncio.wait_for(subscribed.wait(), timeout=SUBSCRIBE_TIMEOUT_SECONDS)
        except Exception as e:
            logger.error(f"❌ Realtime subscribe failed for {table} ({realtime_filter}): {e}")
            await self._remove_channel(client, channel)
            raise TransientIOError("subscribe", str(e)) from e

        async def release():
            await self._remove_channel(client, channel)

        stream._on_close = release
        logger.info(f"📡 Realtime channel open: {table} ({realtime_filter or 'all rows'})")
        return stream

    async def _remove_channel(self, client: AsyncClient, channel):
        try:
            await client.remove_channel(channel)
        except Exception as e:
            logger.warning(f"⚠️ Failed to remove realtime channel: {e}")

    async def close(self):
        if self._client:
            try:
                await self._client.remove_all_channels()
            except Exception as e:
                logger.warning(f"⚠️ Failed to close realtime channels: {e}")
            self._client = None


def parse_realtime_payload(table: str, payload: Dict[str, Any]) -> Optional[ChangeEvent]:
    """Normalizes a postgres_changes payload (realtime v1 and v2 shapes)."""
    data = payload.get("data", payload)
    kind = data.get("type") or data.get("eventType")
    kind = getattr(kind, "value", kind)
    try:
        mutation = MutationType(str(kind).upper())
    except ValueError:
        logger.warning(f"⚠️ Ignoring realtime payload with unknown type: {kind}")
        return None
    return ChangeEvent(
        mutation_type=mutation,
        table=data.get("table") or table,
        new_row=data.get("record") or data.get("new") or {},
        old_row=data.get("old_record") or data.get("old") or {},
        commit_timestamp=data.get("commit_timestamp"),
    )


class MemoryStore(Store):
    """
    In-process store with a change feed.
    Used for local development (STORE_BACKEND=memory) and injected into
    tests. Fault hooks: `available`, `drop_next_events`, `disconnect`,
    `replay_last`.
    """

    def __init__(self, history_limit: int = MEMORY_HISTORY_LIMIT):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._streams: List[Tuple[str, Optional[RowFilter], EventStream]] = []
        self._suppressed = 0
        self.available = True
        self.history: Deque[ChangeEvent] = deque(maxlen=history_limit)

    def _check(self, operation: str):
        if not self.available:
            raise TransientIOError(operation, "memory store offline")

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]):
        """Loads fixture rows without emitting change events."""
        id_column = ID_COLUMNS.get(table, "id")
        for row in rows:
            stored = copy.deepcopy(row)
            stored.setdefault(id_column, str(uuid.uuid4()))
            self._tables[table][str(stored[id_column])] = stored

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        self._check(f"insert {table}")
        id_column = ID_COLUMNS.get(table, "id")
        stored = copy.deepcopy(row)
        if stored.get(id_column) is None:
            stored[id_column] = str(uuid.uuid4())
        key = str(stored[id_column])
        if key in self._tables[table]:
            raise ValidationError(f"Duplicate key {id_column}={key} in {table}")
        self._tables[table][key] = stored
        self._emit(ChangeEvent(mutation_type=MutationType.INSERT, table=table,
                               new_row=copy.deepcopy(stored)))
        return copy.deepcopy(stored)

    async def update(self, table: str, row_filter: RowFilter, patch: Dict[str, Any]) -> int:
        self._check(f"update {table}")
        affected = 0
        for row in self._tables[table].values():
            if not row_filter.matches(row):
                continue
            old_row = copy.deepcopy(row)
            row.update(copy.deepcopy(patch))
            affected += 1
            self._emit(ChangeEvent(mutation_type=MutationType.UPDATE, table=table,
                                   new_row=copy.deepcopy(row), old_row=old_row))
        return affected

    async def select(self, table: str, row_filter: Optional[RowFilter] = None,
                     order_by: Optional[Order] = None) -> List[Dict[str, Any]]:
        self._check(f"select {table}")
        rows = [copy.deepcopy(r) for r in self._tables[table].values()
                if row_filter is None or row_filter.matches(r)]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by.column) is None,
                                     _parse_instant(r.get(order_by.column))),
                      reverse=order_by.desc)
        return rows

    async def subscribe(self, table: str, row_filter: Optional[RowFilter] = None) -> EventStream:
        self._check("subscribe")
        stream = EventStream()
        entry = (table, row_filter, stream)
        self._streams.append(entry)

        async def release():
            if entry in self._streams:
                self._streams.remove(entry)

        stream._on_close = release
        return stream

    def drop_next_events(self, count: int = 1):
        """The next `count` mutations are committed but never pushed."""
        self._suppressed += count

    def disconnect(self):
        """Breaks every open change feed, as a dropped websocket would."""
        streams, self._streams = self._streams, []
        for _, _, stream in streams:
            stream.fail(TransientIOError("subscribe", "connection lost"))

    def replay_last(self):
        """Redelivers the most recent change event (at-least-once delivery)."""
        if self.history:
            self._broadcast(self.history[-1])

    def subscriber_count(self) -> int:
        return len(self._streams)

    def _emit(self, event: ChangeEvent):
        self.history.append(event)
        if self._suppressed:
            self._suppressed -= 1
            logger.debug(f"🔇 Suppressed {event.mutation_type.value} on {event.table}")
            return
        self._broadcast(event)

    def _broadcast(self, event: ChangeEvent):
        row = event.new_row or event.old_row
        for table, row_filter, stream in list(self._streams):
            if table == event.table and (row_filter is None or row_filter.matches(row)):
                stream.push(event)


def build_store() -> Store:
    if settings.STORE_BACKEND == "memory":
        logger.warning("⚠️ Using in-memory store, data is not persisted")
        return MemoryStore()
    return SupabaseStore()
