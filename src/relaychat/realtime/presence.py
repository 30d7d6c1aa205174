"""Presence coordinator for the local user's online/offline/idle/dnd status.

Handles:
- Writing the local user's status row
- Watching any user's status row through the subscription registry
- Fanning one row subscription out to every local observer

The coordinator relays change-feed events; it does not cache statuses.
One instance exists per process and is owned by :class:`RealtimeRuntime`.
"""

import asyncio
import itertools
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Union

from relaychat.core.exceptions import AuthenticationError, ChannelInUseError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import ChangeEventType, RowFilter, SubscriptionConfig, channel_key
from relaychat.realtime.registry import SubscriptionRegistry
from relaychat.realtime.transport import OrderedDispatcher, invoke_callback
from relaychat.schemas.realtime import ChangeEvent, PresenceRecord, PresenceStatus

if TYPE_CHECKING:
    from relaychat.backends.base import AuthProvider, Store

logger = get_logger(__name__)

StatusCallback = Callable[[PresenceStatus], Any]
ObserverLostCallback = Callable[[str, Exception], Any]
Disposer = Callable[[], None]


class PresenceCoordinator:
    """Tracks and relays user presence status."""

    def __init__(
        self,
        registry: SubscriptionRegistry,
        store: "Store",
        auth: "AuthProvider",
        table: str = "presence",
    ) -> None:
        self._registry = registry
        self._store = store
        self._auth = auth
        self._table = table
        self._initialized = False
        self._init_lock = asyncio.Lock()
        # observer key -> disposer
        self._subscriptions: dict[str, Disposer] = {}
        # user_id -> {observer key: (ordered callback, on_lost)}
        self._observers: dict[
            str, dict[str, tuple[OrderedDispatcher, Optional[ObserverLostCallback]]]
        ] = {}
        # user_id -> channel key of the shared row subscription
        self._channel_keys: dict[str, str] = {}
        self._counter = itertools.count(1)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def observer_count(self) -> int:
        return len(self._subscriptions)

    async def initialize(self, user_id: str) -> None:
        """Mark ``user_id`` online and watch their own status row.

        No-op when already initialized; concurrent calls wait for the first.

        Raises:
            AuthenticationError: If no user session is resolvable
        """
        async with self._init_lock:
            if self._initialized:
                return

            try:
                await self.update_status(PresenceStatus.ONLINE)
                await self.subscribe_to_user_status(user_id, self._on_self_status)
            except Exception:
                logger.exception("presence.initialize failed", extra={"user_id": user_id})
                raise

            self._initialized = True
            logger.info("presence.initialized", extra={"user_id": user_id})

    async def update_status(self, status: Union[PresenceStatus, str]) -> PresenceRecord:
        """Upsert the current user's status with a fresh ``last_seen``.

        The user is resolved on every call, never cached.

        Raises:
            AuthenticationError: If no user session is resolvable
            StoreWriteError: If the upsert fails
        """
        status = PresenceStatus(status)
        user = await self._auth.get_current_user()
        if user is None:
            raise AuthenticationError("No authenticated user to update presence for")

        record = PresenceRecord(
            user_id=user.id,
            status=status,
            last_seen=datetime.now(timezone.utc),
        )
        await self._store.upsert(self._table, record.to_row())
        logger.debug(f"Presence of {user.id} set to {status.value}")
        return record

    async def get_user_status(self, user_id: str) -> PresenceStatus:
        """Read a user's stored status; users without a row are offline."""
        rows = await self._store.select(
            self._table, [RowFilter.eq("user_id", user_id)], columns="status"
        )
        if not rows or not rows[0].get("status"):
            return PresenceStatus.OFFLINE
        return PresenceStatus(rows[0]["status"])

    async def subscribe_to_user_status(
        self,
        user_id: str,
        callback: StatusCallback,
        on_lost: Optional[ObserverLostCallback] = None,
    ) -> Disposer:
        """Call ``callback(status)`` on every change to ``user_id``'s row.

        Observers of the same user share one channel. If that channel is
        dropped after exhausting its retries, every observer of the user gets
        ``on_lost(user_id, error)`` and is detached; subscribe again to resume.

        Returns:
            Disposer that detaches this observer

        Raises:
            ChannelInUseError: If another consumer of the registry holds the
                channel for ``user_id``'s row
        """
        config = SubscriptionConfig(
            table=self._table,
            event=ChangeEventType.ANY,
            filter=RowFilter.eq("user_id", user_id),
        )
        opening = user_id not in self._channel_keys
        if opening:
            key = channel_key(config)
            if self._registry.is_active(key):
                raise ChannelInUseError(key)
            # Claimed before the first await so concurrent observers share it
            self._channel_keys[user_id] = key

        observer_key = f"{user_id}#{next(self._counter)}"
        self._observers.setdefault(user_id, {})[observer_key] = (
            OrderedDispatcher(callback),
            on_lost,
        )

        def dispose() -> None:
            self._dispose_observer(user_id, observer_key)

        self._subscriptions[observer_key] = dispose

        if opening:
            try:
                await self._registry.subscribe(
                    config,
                    lambda change: self._relay(user_id, change),
                    on_lost=self._on_lost,
                )
            except Exception:
                self._dispose_observer(user_id, observer_key)
                raise
            logger.info("presence.subscribed", extra={"user_id": user_id})

        return dispose

    async def cleanup(self) -> None:
        """Mark the current user offline and dispose every observer.

        Observers are disposed even when the offline write fails; the error
        is then re-raised.

        Raises:
            AuthenticationError: If no user session is resolvable
            StoreWriteError: If the upsert fails
        """
        try:
            await self.update_status(PresenceStatus.OFFLINE)
        finally:
            keys = list(self._channel_keys.values())
            self._subscriptions.clear()
            self._observers.clear()
            self._channel_keys.clear()
            self._initialized = False
            for key in keys:
                await self._registry.unsubscribe(key)
            logger.info("presence.cleaned_up", extra={"channels": len(keys)})

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _dispose_observer(self, user_id: str, observer_key: str) -> None:
        if self._subscriptions.pop(observer_key, None) is None:
            return
        observers = self._observers.get(user_id, {})
        observers.pop(observer_key, None)
        if observers:
            return

        self._observers.pop(user_id, None)
        key = self._channel_keys.pop(user_id, None)
        if key is not None:
            self._registry.discard(key)
            logger.info("presence.unsubscribed", extra={"user_id": user_id})

    def _relay(self, user_id: str, change: ChangeEvent) -> None:
        raw_status = change.new.get("status")
        if not raw_status:
            return
        try:
            status = PresenceStatus(raw_status)
        except ValueError:
            logger.warning(f"Ignoring unknown presence status {raw_status!r} for {user_id}")
            return
        for dispatch, _ in list(self._observers.get(user_id, {}).values()):
            dispatch(status)

    def _on_self_status(self, status: PresenceStatus) -> None:
        logger.info("presence.self.updated", extra={"status": status.value})

    def _on_lost(self, key: str, error: Exception) -> None:
        for user_id, observed_key in list(self._channel_keys.items()):
            if observed_key != key:
                continue
            del self._channel_keys[user_id]
            observers = self._observers.pop(user_id, {})
            for observer_key, (_, observer_lost) in observers.items():
                self._subscriptions.pop(observer_key, None)
                if observer_lost is not None:
                    invoke_callback(observer_lost, user_id, error)
            logger.error(
                "presence.subscription_lost",
                extra={"user_id": user_id, "observers": len(observers), "error": str(error)},
            )
