"""In-process backend: dict-backed tables and a change feed driven by upserts.

Used for local development (``BACKEND=memory``) and tests. Upserting a row
emits a ``postgres_changes`` payload to every subscribed channel whose
binding matches, using the same payload shape as the Supabase realtime server.
Channels can be dropped on demand to exercise reconnect handling.
"""

import asyncio
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Any, Optional

from realtime import RealtimeSubscribeStates

from relaychat.core.exceptions import StoreWriteError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import RowFilter
from relaychat.schemas.realtime import AuthUser

logger = get_logger(__name__)

# table -> primary key columns; other tables are keyed by "id"
DEFAULT_PRIMARY_KEYS: dict[str, tuple[str, ...]] = {
    "presence": ("user_id",),
    "typing_indicators": ("channel_id", "user_id"),
    "channel_members": ("channel_id", "user_id"),
    "group_members": ("group_id", "user_id"),
}


class InMemoryChannel:
    """A realtime channel living in :class:`InMemoryChangeFeed`."""

    def __init__(self, feed: "InMemoryChangeFeed", topic: str) -> None:
        self._feed = feed
        self.topic = topic
        self.bindings: list[dict[str, Any]] = []
        self.status_callback: Optional[Callable[..., None]] = None
        self.state: Optional[RealtimeSubscribeStates] = None
        self.unsubscribed = False

    def on_postgres_changes(
        self,
        event: str,
        callback: Callable[[dict[str, Any]], Any],
        table: str = "*",
        schema: str = "public",
        filter: Optional[str] = None,
    ) -> "InMemoryChannel":
        self.bindings.append(
            {
                "event": event,
                "table": table,
                "schema": schema,
                "filter": RowFilter.parse(filter) if filter else None,
                "callback": callback,
            }
        )
        return self

    async def subscribe(
        self, callback: Optional[Callable[..., None]] = None
    ) -> "InMemoryChannel":
        if self._feed.fail_subscribe is not None:
            raise self._feed.fail_subscribe
        self.status_callback = callback
        self._feed.attach(self)
        # The server acknowledges the join asynchronously
        asyncio.get_running_loop().call_soon(self._set_state, self._feed.join_reply)
        return self

    async def unsubscribe(self) -> None:
        self.unsubscribed = True
        self._feed.detach(self)

    def drop(self, state: RealtimeSubscribeStates = RealtimeSubscribeStates.CLOSED) -> None:
        """Simulate a server-side close, channel error or timeout."""
        self._feed.detach(self)
        self._set_state(state)

    def _set_state(self, state: RealtimeSubscribeStates) -> None:
        if self.unsubscribed:
            return
        self.state = state
        if state != RealtimeSubscribeStates.SUBSCRIBED:
            self._feed.detach(self)
        if self.status_callback is not None:
            self.status_callback(state, None)

    def deliver(self, schema: str, table: str, event_type: str, record: dict, old: dict) -> int:
        delivered = 0
        for binding in self.bindings:
            if binding["schema"] != schema or binding["table"] not in ("*", table):
                continue
            if binding["event"] not in ("*", event_type):
                continue
            row_filter = binding["filter"]
            if row_filter is not None and not row_filter.matches(record or old):
                continue
            payload = {
                "data": {
                    "schema": schema,
                    "table": table,
                    "type": event_type,
                    "commit_timestamp": datetime.now(timezone.utc).isoformat(),
                    "record": record,
                    "old_record": old,
                },
                "ids": [],
            }
            binding["callback"](payload)
            delivered += 1
        return delivered


class InMemoryChangeFeed:
    """Transport handing out :class:`InMemoryChannel` objects."""

    def __init__(self) -> None:
        self.channels: list[InMemoryChannel] = []
        self._live: list[InMemoryChannel] = []
        # Status sent in reply to a join; set to CLOSED to make joins fail
        self.join_reply = RealtimeSubscribeStates.SUBSCRIBED
        # Exception raised by subscribe(), if set
        self.fail_subscribe: Optional[Exception] = None

    def channel(self, topic: str) -> InMemoryChannel:
        channel = InMemoryChannel(self, topic)
        self.channels.append(channel)
        return channel

    def channels_named(self, topic: str) -> list[InMemoryChannel]:
        return [channel for channel in self.channels if channel.topic == topic]

    @property
    def live_channels(self) -> list[InMemoryChannel]:
        return list(self._live)

    def attach(self, channel: InMemoryChannel) -> None:
        if channel not in self._live:
            self._live.append(channel)

    def detach(self, channel: InMemoryChannel) -> None:
        if channel in self._live:
            self._live.remove(channel)

    def emit(
        self,
        table: str,
        event_type: str,
        record: Optional[dict[str, Any]] = None,
        old: Optional[dict[str, Any]] = None,
        schema: str = "public",
    ) -> None:
        """Deliver a row change to matching subscribed channels on the next loop turn."""
        loop = asyncio.get_running_loop()
        for channel in list(self._live):
            if channel.state != RealtimeSubscribeStates.SUBSCRIBED:
                continue
            loop.call_soon(
                channel.deliver, schema, table, event_type, dict(record or {}), dict(old or {})
            )


class InMemoryStore:
    """Dict-backed tables that publish changes to a change feed."""

    def __init__(
        self,
        feed: Optional[InMemoryChangeFeed] = None,
        primary_keys: Optional[dict[str, tuple[str, ...]]] = None,
    ) -> None:
        self._feed = feed
        self._primary_keys = {**DEFAULT_PRIMARY_KEYS, **(primary_keys or {})}
        self._tables: dict[str, dict[tuple, dict[str, Any]]] = {}

    def rows(self, table: str) -> list[dict[str, Any]]:
        return [dict(row) for row in self._tables.get(table, {}).values()]

    async def upsert(self, table: str, row: dict[str, Any]) -> list[dict[str, Any]]:
        columns = self._primary_keys.get(table, ("id",))
        missing = [column for column in columns if row.get(column) is None]
        if missing:
            raise StoreWriteError(
                table, "upsert", message=f"Missing primary key column(s) {', '.join(missing)}"
            )

        pk = tuple(row[column] for column in columns)
        rows = self._tables.setdefault(table, {})
        old = rows.get(pk)
        new = {**(old or {}), **row}
        rows[pk] = new

        if self._feed is not None:
            self._feed.emit(table, "UPDATE" if old else "INSERT", new, old)
        return [dict(new)]

    async def delete(self, table: str, filters: Sequence[RowFilter]) -> list[dict[str, Any]]:
        rows = self._tables.get(table, {})
        removed = [pk for pk, row in rows.items() if all(f.matches(row) for f in filters)]
        deleted = [rows.pop(pk) for pk in removed]
        if self._feed is not None:
            for row in deleted:
                self._feed.emit(table, "DELETE", {}, row)
        return deleted

    async def select(
        self,
        table: str,
        filters: Sequence[RowFilter] = (),
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        matched = [
            row
            for row in self._tables.get(table, {}).values()
            if all(row_filter.matches(row) for row_filter in filters)
        ]
        if columns.strip() == "*":
            return [dict(row) for row in matched]
        names = [name.strip() for name in columns.split(",") if name.strip()]
        return [{name: row.get(name) for name in names} for row in matched]


class InMemoryAuth:
    """Session holder with an explicit signed-in user."""

    def __init__(self, user: Optional[AuthUser] = None) -> None:
        self.user = user

    def sign_in(self, user_id: str, email: Optional[str] = None) -> AuthUser:
        self.user = AuthUser(id=user_id, email=email)
        return self.user

    def sign_out(self) -> None:
        self.user = None

    async def get_current_user(self) -> Optional[AuthUser]:
        return self.user


class InMemoryBackend:
    """Store, auth and change feed wired together in one process."""

    def __init__(self, user: Optional[AuthUser] = None) -> None:
        self.transport = InMemoryChangeFeed()
        self.store = InMemoryStore(self.transport)
        self.auth = InMemoryAuth(user)

    async def close(self) -> None:
        for channel in self.transport.live_channels:
            await channel.unsubscribe()
        logger.info("In-memory backend closed")
