"""Member list with live presence statuses.

The roster does not apply change payloads. Any presence change, and any
membership change in the watched channel or group, triggers a refetch of the
members' presence rows.
"""

from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING, Optional

from relaychat.core.logging import get_logger
from relaychat.realtime.keys import (
    ChangeEventType,
    FilterOperator,
    RowFilter,
    SubscriptionConfig,
    channel_key,
)
from relaychat.realtime.registry import SubscriptionRegistry
from relaychat.realtime.transport import invoke_callback
from relaychat.schemas.realtime import ChangeEvent, PresenceStatus

if TYPE_CHECKING:
    from relaychat.backends.base import Store

logger = get_logger(__name__)

RosterCallback = Callable[[dict[str, PresenceStatus]], Awaitable[None] | None]


class PresenceRoster:
    """Presence statuses of a fixed set of members."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        store: "Store",
        members: Iterable[str],
        channel_id: Optional[str] = None,
        group_id: Optional[str] = None,
        on_change: Optional[RosterCallback] = None,
        table: str = "presence",
    ) -> None:
        self._registry = registry
        self._store = store
        self._members: dict[str, PresenceStatus] = {
            user_id: PresenceStatus.OFFLINE for user_id in members
        }
        self._channel_id = channel_id
        self._group_id = group_id
        self._on_change = on_change
        self._table = table
        # Keys this roster opened; keys already owned elsewhere are not closed on stop()
        self._keys: list[str] = []

    @property
    def members(self) -> dict[str, PresenceStatus]:
        return dict(self._members)

    @property
    def keys(self) -> list[str]:
        return list(self._keys)

    async def start(self) -> None:
        """Load current statuses and start watching for changes."""
        configs = [SubscriptionConfig(table=self._table, event=ChangeEventType.ANY)]
        if self._channel_id:
            configs.append(
                SubscriptionConfig(
                    table="channel_members", filter=RowFilter.eq("channel_id", self._channel_id)
                )
            )
        if self._group_id:
            configs.append(
                SubscriptionConfig(
                    table="group_members", filter=RowFilter.eq("group_id", self._group_id)
                )
            )

        for config in configs:
            key = channel_key(config)
            if self._registry.is_active(key):
                logger.warning(f"Roster shares existing channel {key}; it will not own it")
                continue
            self._keys.append(await self._registry.subscribe(config, self._on_row_change))

        await self.refresh()

    async def stop(self) -> None:
        keys, self._keys = self._keys, []
        for key in keys:
            await self._registry.unsubscribe(key)

    async def refresh(self) -> dict[str, PresenceStatus]:
        """Refetch every member's status; members without a row are offline."""
        if not self._members:
            return {}

        members_in = RowFilter("user_id", FilterOperator.IN, f"({','.join(self._members)})")
        rows = await self._store.select(self._table, [members_in], columns="user_id,status")
        found = {row["user_id"]: row.get("status") for row in rows if row.get("user_id")}

        for user_id in self._members:
            try:
                self._members[user_id] = PresenceStatus(found.get(user_id) or "offline")
            except ValueError:
                self._members[user_id] = PresenceStatus.OFFLINE

        if self._on_change is not None:
            invoke_callback(self._on_change, self.members)
        return self.members

    def _on_row_change(self, change: ChangeEvent) -> Awaitable[dict[str, PresenceStatus]]:
        logger.debug(f"Roster refresh on {change.table} {change.event_type.value}")
        return self.refresh()
