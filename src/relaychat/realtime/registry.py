"""Subscription registry: one live transport channel per channel key.

Handles:
- Deduplicating subscriptions by channel key
- Connection state tracking per channel
- Resubscribing dropped channels with exponential backoff
- Dropping channels that exhaust their retries

State machine per handle::

    CONNECTING -> SUBSCRIBED -> {CLOSED, ERRORED, TIMED_OUT}
        -> CONNECTING (retry) | REMOVED (exhausted or unsubscribed)

All mutation happens on the event loop, so no lock guards the handle map.
A retry only proceeds while its handle is still the one registered under its
key; an unsubscribed key never goes back to CONNECTING.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Optional

from relaychat.core.exceptions import RetryExhaustedError, TransportError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import SubscriptionConfig, channel_key
from relaychat.realtime.policy import ReconnectPolicy
from relaychat.realtime.transport import (
    ChangeCallback,
    ChangeFeedChannel,
    ChangeFeedClient,
    ChannelState,
    OrderedDispatcher,
    invoke_callback,
)

logger = get_logger(__name__)

LostCallback = Callable[[str, RetryExhaustedError], Awaitable[None] | None]
Sleep = Callable[[float], Awaitable[Any]]


class SubscriptionState(str, Enum):
    """Lifecycle states of a registered subscription."""

    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"
    REMOVED = "removed"


_DROP_STATES = {
    ChannelState.CLOSED: SubscriptionState.CLOSED,
    ChannelState.CHANNEL_ERROR: SubscriptionState.ERRORED,
    ChannelState.TIMED_OUT: SubscriptionState.TIMED_OUT,
}


@dataclass
class SubscriptionHandle:
    """Registry-private record of one subscription.

    The config and callback are stored so a retry can reopen an identical
    channel. ``dispatch`` outlives the channels, so changes stay in order
    across reconnects. ``generation`` increases whenever the channel is replaced; status
    reports carrying an older generation come from a superseded channel.
    """

    key: str
    config: SubscriptionConfig
    callback: ChangeCallback
    on_lost: Optional[LostCallback] = None
    channel: Optional[ChangeFeedChannel] = None
    attempts: int = 0
    state: SubscriptionState = SubscriptionState.CONNECTING
    generation: int = 0
    retry_task: Optional[asyncio.Task] = None
    dispatch: Optional[OrderedDispatcher] = None

    def __post_init__(self) -> None:
        if self.dispatch is None:
            self.dispatch = OrderedDispatcher(self.callback)


class SubscriptionRegistry:
    """Owns every change-feed subscription of the process."""

    def __init__(
        self,
        feed: ChangeFeedClient,
        policy: Optional[ReconnectPolicy] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._feed = feed
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep
        # key -> SubscriptionHandle
        self._handles: dict[str, SubscriptionHandle] = {}
        # Background close operations; kept so they are not collected
        self._closing: set[asyncio.Task] = set()

    @property
    def policy(self) -> ReconnectPolicy:
        return self._policy

    async def subscribe(
        self,
        config: SubscriptionConfig,
        callback: ChangeCallback,
        on_lost: Optional[LostCallback] = None,
    ) -> str:
        """Subscribe ``callback`` to changes matching ``config``.

        A key that is already registered is returned as-is and no second
        channel is opened. The channel join is sent before returning, but the
        subscription is only live once the transport acknowledges it.

        Args:
            config: Table, event, schema and filter to watch
            callback: Called with each :class:`ChangeEvent`
            on_lost: Called with ``(key, error)`` if the channel is dropped
                after exhausting its reconnect attempts

        Returns:
            Channel key identifying the subscription
        """
        key = channel_key(config)

        if key in self._handles:
            logger.warning(f"Channel {key} already exists")
            return key

        handle = SubscriptionHandle(key=key, config=config, callback=callback, on_lost=on_lost)
        # Registered before the first await so concurrent callers see it
        self._handles[key] = handle
        await self._open(handle)
        return key

    async def unsubscribe(self, key: str) -> None:
        """Close the channel for ``key``. Unknown keys are ignored."""
        handle = self._detach(key)
        if handle is None:
            return
        await self._feed.close(handle.channel, key)
        logger.debug(f"Unsubscribed from {key}")

    def discard(self, key: str) -> None:
        """Remove ``key`` now and close its channel in the background."""
        handle = self._detach(key)
        if handle is not None:
            self._close_later(handle)

    async def close_all(self) -> None:
        """Unsubscribe every key and wait for background closes."""
        for key in list(self._handles):
            await self.unsubscribe(key)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    def list_active_keys(self) -> set[str]:
        return set(self._handles)

    def is_active(self, key: str) -> bool:
        return key in self._handles

    def get_state(self, key: str) -> Optional[SubscriptionState]:
        handle = self._handles.get(key)
        return handle.state if handle else None

    def get_stats(self) -> dict[str, Any]:
        """Get subscription statistics."""
        return {
            "total_subscriptions": len(self._handles),
            "channels": {
                key: {"state": handle.state.value, "attempts": handle.attempts}
                for key, handle in self._handles.items()
            },
        }

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _detach(self, key: str) -> Optional[SubscriptionHandle]:
        handle = self._handles.pop(key, None)
        if handle is None:
            return None
        handle.state = SubscriptionState.REMOVED
        handle.generation += 1
        if handle.retry_task is not None and handle.retry_task is not asyncio.current_task():
            handle.retry_task.cancel()
        handle.retry_task = None
        return handle

    def _close_later(self, handle: SubscriptionHandle) -> None:
        if handle.channel is not None:
            self._spawn_close(handle.channel, handle.key)

    def _spawn_close(self, channel: ChangeFeedChannel, key: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._feed.close(channel, key))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        return task

    async def _open(self, handle: SubscriptionHandle) -> None:
        handle.generation += 1
        generation = handle.generation
        handle.state = SubscriptionState.CONNECTING
        try:
            handle.channel = await self._feed.open(
                handle.key,
                handle.config,
                handle.dispatch,
                partial(self._on_status, handle.key, generation),
            )
        except TransportError as e:
            logger.warning(f"Failed to open channel {handle.key}: {e.message}")
            self._on_status(handle.key, generation, ChannelState.CHANNEL_ERROR, e)
            return

        if self._handles.get(handle.key) is not handle:
            # Unsubscribed while the join was in flight
            await self._feed.close(handle.channel, handle.key)

    def _on_status(
        self,
        key: str,
        generation: int,
        state: ChannelState,
        error: Optional[BaseException] = None,
    ) -> None:
        handle = self._handles.get(key)
        if handle is None or handle.generation != generation:
            return

        if state is ChannelState.SUBSCRIBED:
            handle.state = SubscriptionState.SUBSCRIBED
            handle.attempts = 0
            logger.debug(f"Subscribed to {key}")
            return

        if handle.retry_task is not None:
            return

        handle.state = _DROP_STATES[state]
        self._handle_disconnect(handle, error)

    def _handle_disconnect(
        self, handle: SubscriptionHandle, error: Optional[BaseException]
    ) -> None:
        attempts = handle.attempts

        if self._policy.should_retry(attempts):
            delay_ms = self._policy.delay_for(attempts)
            handle.attempts = attempts + 1
            logger.warning(
                f"Channel {handle.key} {handle.state.value}. Retrying in {delay_ms}ms "
                f"({handle.attempts}/{self._policy.max_retries})",
                extra={"channel": handle.key, "error": str(error) if error else None},
            )
            handle.retry_task = asyncio.get_running_loop().create_task(
                self._retry(handle, delay_ms)
            )
            return

        lost = RetryExhaustedError(handle.key, attempts)
        logger.error(lost.message, extra={"channel": handle.key})
        self._handles.pop(handle.key, None)
        handle.state = SubscriptionState.REMOVED
        handle.generation += 1
        self._close_later(handle)
        if handle.on_lost is not None:
            invoke_callback(handle.on_lost, handle.key, lost)

    async def _retry(self, handle: SubscriptionHandle, delay_ms: int) -> None:
        await self._sleep(delay_ms / 1000)

        if self._handles.get(handle.key) is not handle:
            logger.debug(f"Skipping retry for removed channel {handle.key}")
            return

        old_channel, handle.channel = handle.channel, None
        # Invalidate status reports from the channel being replaced
        handle.generation += 1
        if old_channel is not None:
            # An unsubscribe cancelling this task must not abandon the leave
            await asyncio.shield(self._spawn_close(old_channel, handle.key))

        if self._handles.get(handle.key) is not handle:
            return
        handle.retry_task = None
        await self._open(handle)
