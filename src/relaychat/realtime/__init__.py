"""Realtime change-feed subscriptions, presence and typing status.

Provides:
- SubscriptionRegistry: one deduplicated, self-healing channel per channel key
- PresenceCoordinator: the local user's status row and status observers
- TypingNotifier: per-channel typing indicators
- PresenceRoster: member lists refreshed on presence changes
- ConnectionGateway: WebSocket fan-out of registry subscriptions

``RealtimeRuntime`` lives in :mod:`relaychat.realtime.runtime`; it depends on
:mod:`relaychat.backends`, which itself imports from this package.
"""

from relaychat.realtime.gateway import Connection, ConnectionGateway
from relaychat.realtime.keys import FilterOperator, RowFilter, SubscriptionConfig, channel_key
from relaychat.realtime.policy import ReconnectPolicy, delay_for, should_retry
from relaychat.realtime.presence import PresenceCoordinator
from relaychat.realtime.registry import SubscriptionRegistry, SubscriptionState
from relaychat.realtime.roster import PresenceRoster
from relaychat.realtime.transport import ChangeFeedClient, ChannelState
from relaychat.realtime.typing_status import TypingNotifier

__all__ = [
    "ChangeFeedClient",
    "ChannelState",
    "Connection",
    "ConnectionGateway",
    "FilterOperator",
    "PresenceCoordinator",
    "PresenceRoster",
    "ReconnectPolicy",
    "RowFilter",
    "SubscriptionConfig",
    "SubscriptionRegistry",
    "SubscriptionState",
    "TypingNotifier",
    "channel_key",
    "delay_for",
    "should_retry",
]
