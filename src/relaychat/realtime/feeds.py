"""Per-table change feeds opened by chat views.

Row feeds (messages, thread replies, reactions, typing) hand the changed row
to the callback. Refresh feeds (channels, groups, memberships) hand over the
whole :class:`ChangeEvent`; their consumers refetch rather than patch.

Every helper returns the channel key; pass it to
``SubscriptionRegistry.unsubscribe`` to stop watching.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Optional

from relaychat.core.logging import get_logger
from relaychat.realtime.keys import ChangeEventType, RowFilter, SubscriptionConfig
from relaychat.realtime.registry import LostCallback, SubscriptionRegistry
from relaychat.realtime.transport import ChangeCallback, invoke_callback
from relaychat.schemas.realtime import ChangeEvent

logger = get_logger(__name__)

RowCallback = Callable[[dict[str, Any]], Awaitable[None] | None]

MESSAGES_TABLE = "messages"
REACTIONS_TABLE = "reactions"
TYPING_TABLE = "typing_indicators"
CHANNELS_TABLE = "channels"
CHANNEL_MEMBERS_TABLE = "channel_members"
GROUPS_TABLE = "groups"
GROUP_MEMBERS_TABLE = "group_members"


def rows_with(column: str, callback: RowCallback) -> ChangeCallback:
    """Adapt a row callback; changes whose new row lacks ``column`` are skipped.

    Deletes carry an empty new row, so row feeds only see inserts and updates.
    """

    def _on_change(change: ChangeEvent) -> None:
        if not change.new or change.new.get(column) is None:
            return
        invoke_callback(callback, change.new)

    return _on_change


async def _watch(
    registry: SubscriptionRegistry,
    table: str,
    row_filter: RowFilter,
    callback: ChangeCallback,
    on_lost: Optional[LostCallback],
) -> str:
    config = SubscriptionConfig(table=table, event=ChangeEventType.ANY, filter=row_filter)
    key = await registry.subscribe(config, callback, on_lost=on_lost)
    logger.info("realtime.feed.subscribed", extra={"table": table, "filter": str(row_filter)})
    return key


# =============================================================================
# Row Feeds
# =============================================================================


async def watch_channel_messages(
    registry: SubscriptionRegistry,
    channel_id: str,
    callback: RowCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    """Messages posted, edited or removed in a chat channel."""
    return await _watch(
        registry,
        MESSAGES_TABLE,
        RowFilter.eq("channel_id", channel_id),
        rows_with("id", callback),
        on_lost,
    )


async def watch_thread_messages(
    registry: SubscriptionRegistry,
    thread_id: str,
    callback: RowCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    """Replies in a message thread."""
    return await _watch(
        registry,
        MESSAGES_TABLE,
        RowFilter.eq("thread_id", thread_id),
        rows_with("id", callback),
        on_lost,
    )


async def watch_reactions(
    registry: SubscriptionRegistry,
    message_id: str,
    callback: RowCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    return await _watch(
        registry,
        REACTIONS_TABLE,
        RowFilter.eq("message_id", message_id),
        rows_with("id", callback),
        on_lost,
    )


async def watch_typing(
    registry: SubscriptionRegistry,
    channel_id: str,
    callback: RowCallback,
    on_lost: Optional[LostCallback] = None,
    table: str = TYPING_TABLE,
) -> str:
    """Typing rows of a chat channel, keyed by ``(channel_id, user_id)``."""
    return await _watch(
        registry,
        table,
        RowFilter.eq("channel_id", channel_id),
        rows_with("user_id", callback),
        on_lost,
    )


# =============================================================================
# Refresh Feeds
# =============================================================================


async def watch_group_channels(
    registry: SubscriptionRegistry,
    group_id: str,
    callback: ChangeCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    return await _watch(
        registry, CHANNELS_TABLE, RowFilter.eq("group_id", group_id), callback, on_lost
    )


async def watch_channel_memberships(
    registry: SubscriptionRegistry,
    user_id: str,
    callback: ChangeCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    return await _watch(
        registry, CHANNEL_MEMBERS_TABLE, RowFilter.eq("user_id", user_id), callback, on_lost
    )


async def watch_public_groups(
    registry: SubscriptionRegistry,
    callback: ChangeCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    return await _watch(
        registry, GROUPS_TABLE, RowFilter.eq("visibility", "public"), callback, on_lost
    )


async def watch_group_memberships(
    registry: SubscriptionRegistry,
    user_id: str,
    callback: ChangeCallback,
    on_lost: Optional[LostCallback] = None,
) -> str:
    return await _watch(
        registry, GROUP_MEMBERS_TABLE, RowFilter.eq("user_id", user_id), callback, on_lost
    )
