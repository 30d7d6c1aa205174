"""Typing indicators: per-channel ``is_typing`` rows with an inactivity timeout."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from relaychat.core.exceptions import AuthenticationError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import RowFilter

if TYPE_CHECKING:
    from relaychat.backends.base import AuthProvider, Store

logger = get_logger(__name__)


class TypingNotifier:
    """Publishes the local user's typing state for chat channels.

    ``keystroke()`` marks the user as typing and clears the flag after
    ``idle_timeout_ms`` without further keystrokes.
    """

    def __init__(
        self,
        store: "Store",
        auth: "AuthProvider",
        table: str = "typing_indicators",
        idle_timeout_ms: int = 2000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._auth = auth
        self._table = table
        self._idle_timeout_ms = idle_timeout_ms
        self._sleep = sleep
        # channel_id -> pending idle timer
        self._timers: dict[str, asyncio.Task] = {}
        self._typing: set[str] = set()

    def is_typing(self, channel_id: str) -> bool:
        return channel_id in self._typing

    async def set_typing(self, channel_id: str, is_typing: bool) -> dict[str, Any]:
        """Upsert the current user's typing row for ``channel_id``.

        Raises:
            AuthenticationError: If no user session is resolvable
            StoreWriteError: If the upsert fails
        """
        user = await self._auth.get_current_user()
        if user is None:
            raise AuthenticationError("No authenticated user to update typing status for")

        row = {
            "channel_id": channel_id,
            "user_id": user.id,
            "is_typing": is_typing,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        rows = await self._store.upsert(self._table, row)
        # Local state follows the stored row only once the write landed
        if is_typing:
            self._typing.add(channel_id)
        else:
            self._typing.discard(channel_id)
        return rows[0] if rows else row

    async def keystroke(self, channel_id: str) -> None:
        """Record typing activity; only the first keystroke writes."""
        if channel_id not in self._typing:
            await self.set_typing(channel_id, True)
        self._restart_timer(channel_id)

    async def stop(self, channel_id: str) -> None:
        """Clear typing state immediately, e.g. when a message is sent."""
        timer = self._timers.pop(channel_id, None)
        if timer is not None:
            timer.cancel()
        if channel_id in self._typing:
            await self.set_typing(channel_id, False)

    async def stop_all(self) -> None:
        for channel_id in list(self._typing | set(self._timers)):
            await self.stop(channel_id)

    async def list_typing(self, channel_id: str) -> list[dict[str, Any]]:
        """Rows of users currently typing in ``channel_id``."""
        return await self._store.select(
            self._table,
            [RowFilter.eq("channel_id", channel_id), RowFilter.eq("is_typing", "true")],
        )

    def _restart_timer(self, channel_id: str) -> None:
        timer = self._timers.pop(channel_id, None)
        if timer is not None:
            timer.cancel()
        self._timers[channel_id] = asyncio.get_running_loop().create_task(
            self._expire(channel_id)
        )

    async def _expire(self, channel_id: str) -> None:
        await self._sleep(self._idle_timeout_ms / 1000)
        if self._timers.get(channel_id) is asyncio.current_task():
            del self._timers[channel_id]
        try:
            await self.set_typing(channel_id, False)
        except Exception as e:
            logger.warning(f"Failed to clear typing status for {channel_id}: {e}")
