"""Change-feed client: opens realtime channels and normalizes their callbacks.

The transport is anything exposing the realtime-py channel API:

    channel = transport.channel(name)
    channel.on_postgres_changes(event, callback, table=..., schema=..., filter=...)
    await channel.subscribe(status_callback)
    await channel.unsubscribe()

``supabase.AsyncClient`` and ``realtime.AsyncRealtimeClient`` both satisfy it,
as does the in-memory backend used for local runs and tests.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Optional, Protocol

from pydantic import ValidationError
from realtime import RealtimeSubscribeStates

from relaychat.core.exceptions import TransportError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import SubscriptionConfig
from relaychat.schemas.realtime import ChangeEvent

logger = get_logger(__name__)

ChangeCallback = Callable[[ChangeEvent], Awaitable[None] | None]
StatusCallback = Callable[["ChannelState", Optional[BaseException]], None]


class ChannelState(str, Enum):
    """Connection states reported by a transport channel."""

    SUBSCRIBED = "SUBSCRIBED"
    CLOSED = "CLOSED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"


_TRANSPORT_STATES = {
    RealtimeSubscribeStates.SUBSCRIBED: ChannelState.SUBSCRIBED,
    RealtimeSubscribeStates.CLOSED: ChannelState.CLOSED,
    RealtimeSubscribeStates.CHANNEL_ERROR: ChannelState.CHANNEL_ERROR,
    RealtimeSubscribeStates.TIMED_OUT: ChannelState.TIMED_OUT,
}


class ChangeFeedChannel(Protocol):
    def on_postgres_changes(
        self,
        event: str,
        callback: Callable[[dict[str, Any]], Any],
        table: str = "*",
        schema: str = "public",
        filter: Optional[str] = None,
    ) -> "ChangeFeedChannel": ...

    async def subscribe(
        self, callback: Optional[Callable[[Any, Optional[Exception]], None]] = None
    ) -> "ChangeFeedChannel": ...

    async def unsubscribe(self) -> None: ...


class ChangeFeedTransport(Protocol):
    def channel(self, topic: str) -> ChangeFeedChannel: ...


def to_channel_state(status: Any) -> Optional[ChannelState]:
    """Map a transport status (enum or raw string) onto :class:`ChannelState`."""
    if status in _TRANSPORT_STATES:
        return _TRANSPORT_STATES[status]
    try:
        return ChannelState(getattr(status, "value", status))
    except ValueError:
        return None


def invoke_callback(callback: Callable[..., Any], *args: Any) -> None:
    """Run a consumer callback; coroutine results are scheduled on the loop.

    Consumer failures are logged and never propagate into the transport.
    """
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_callback_failure)
    except Exception:
        logger.exception(f"Realtime callback {getattr(callback, '__name__', callback)!r} failed")


def _log_callback_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Realtime callback coroutine failed", exc_info=exc)


class OrderedDispatcher:
    """Calls ``callback`` once per event, strictly in arrival order.

    While nothing is pending, synchronous callbacks run inline. Once a
    coroutine result is in flight, later events queue behind it, so a slow
    async consumer never sees a newer event before an older one finishes.
    Failures are logged and never stop the events that follow.
    """

    def __init__(self, callback: Callable[..., Any]) -> None:
        self._callback = callback
        self._tail: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self._tail is not None and not self._tail.done()

    def __call__(self, *args: Any) -> None:
        if self.pending:
            self._tail = asyncio.ensure_future(self._run_after(self._tail, args))
            return
        try:
            result = self._callback(*args)
        except Exception:
            logger.exception(f"Realtime callback {self._name} failed")
            return
        if inspect.isawaitable(result):
            self._tail = asyncio.ensure_future(self._finish(result))

    @property
    def _name(self) -> str:
        return repr(getattr(self._callback, "__name__", self._callback))

    async def _finish(self, awaitable: Awaitable[Any]) -> None:
        try:
            await awaitable
        except Exception:
            logger.exception(f"Realtime callback {self._name} failed")

    async def _run_after(self, previous: asyncio.Future, args: tuple) -> None:
        await asyncio.wait([previous])
        try:
            result = self._callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(f"Realtime callback {self._name} failed")


class ChangeFeedClient:
    """Opens and closes transport channels for subscription configs."""

    def __init__(self, transport: ChangeFeedTransport) -> None:
        self._transport = transport

    async def open(
        self,
        name: str,
        config: SubscriptionConfig,
        listener: ChangeCallback,
        on_status: StatusCallback,
    ) -> ChangeFeedChannel:
        """Open a channel named ``name`` listening for ``config`` changes.

        Returns once the join has been sent; the SUBSCRIBED acknowledgement is
        reported later through ``on_status``. Changes reach ``listener`` in the
        order the transport emits them.

        Raises:
            TransportError: If the channel could not be created or joined
        """
        deliver = listener
        if not isinstance(deliver, OrderedDispatcher):
            deliver = OrderedDispatcher(listener)

        def _on_change(payload: dict[str, Any]) -> None:
            try:
                change = ChangeEvent.from_payload(payload)
            except (ValidationError, AttributeError) as e:
                logger.warning(f"Dropping malformed change payload on {name}: {e}")
                return
            deliver(change)

        def _on_status(status: Any, error: Optional[BaseException] = None) -> None:
            state = to_channel_state(status)
            if state is None:
                logger.debug(f"Ignoring unknown status {status!r} on {name}")
                return
            logger.debug(f"Channel {name} status: {state.value}", extra={"channel": name})
            on_status(state, error)

        try:
            channel = self._transport.channel(name)
            channel.on_postgres_changes(
                event=config.event.value,
                callback=_on_change,
                table=config.table,
                schema=config.schema,
                filter=config.wire_filter,
            )
            await channel.subscribe(_on_status)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise TransportError(name, ChannelState.CHANNEL_ERROR.value, str(e)) from e

        return channel

    async def close(self, channel: Optional[ChangeFeedChannel], name: str = "") -> None:
        """Leave a channel. Failures are logged; a dead channel needs no cleanup."""
        if channel is None:
            return
        try:
            await channel.unsubscribe()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to unsubscribe channel {name}: {e}")
