"""WebSocket gateway relaying change-feed subscriptions to local UI clients.

Handles:
- Connection lifecycle management
- Per-connection subscriptions to channel keys
- Fanning one registry subscription out to every interested connection
- Reporting subscriptions dropped after exhausting their retries

A key is subscribed in the registry when its first connection subscribes and
unsubscribed when its last connection leaves.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Optional
from uuid import uuid4

from fastapi import WebSocket

from relaychat.core.exceptions import ChannelInUseError, ConfigurationError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import SubscriptionConfig, channel_key
from relaychat.realtime.registry import SubscriptionRegistry
from relaychat.schemas.realtime import (
    BaseEvent,
    ChangeEvent,
    ChangeNotification,
    ConnectEvent,
    ErrorEvent,
    PongEvent,
    SubscribedEvent,
    SubscribeRequest,
    SubscriptionLostEvent,
    UnsubscribedEvent,
    WebSocketMessage,
)

logger = get_logger(__name__)


@dataclass
class Connection:
    """Represents a WebSocket connection."""

    connection_id: str
    websocket: WebSocket
    user_id: str
    connected_at: datetime
    subscriptions: set[str] = field(default_factory=set)


class ConnectionGateway:
    """Manages WebSocket connections and their change-feed subscriptions."""

    def __init__(self, registry: SubscriptionRegistry):
        self._registry = registry
        # connection_id -> Connection
        self._connections: dict[str, Connection] = {}
        # channel key -> set of connection_ids
        self._key_subscribers: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, user_id: str) -> Connection:
        """Accept a WebSocket and send the connect confirmation."""
        await websocket.accept()

        connection = Connection(
            connection_id=str(uuid4()),
            websocket=websocket,
            user_id=user_id,
            connected_at=datetime.now(timezone.utc),
        )

        async with self._lock:
            self._connections[connection.connection_id] = connection

        await self.send_to_connection(
            connection.connection_id,
            ConnectEvent(connection_id=connection.connection_id, user_id=user_id),
        )

        logger.info(f"WebSocket connected: {connection.connection_id} (user: {user_id})")
        return connection

    async def disconnect(self, connection_id: str, reason: Optional[str] = None) -> None:
        """Drop a connection and release the keys only it was watching."""
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            if not connection:
                return

            for key in list(connection.subscriptions):
                await self._unsubscribe_internal(connection, key)

        logger.info(f"WebSocket disconnected: {connection_id} (reason: {reason})")

    async def subscribe(
        self,
        connection_id: str,
        request: SubscribeRequest,
        request_id: Optional[str] = None,
    ) -> Optional[str]:
        """Subscribe a connection to the changes described by ``request``.

        Returns:
            The channel key, or None if the connection is unknown or the
            request was rejected (an error event is sent in that case)
        """
        try:
            config = SubscriptionConfig(
                table=request.table,
                event=request.event,
                schema=request.schema_name,
                filter=request.filter,
            )
        except ConfigurationError as e:
            await self.send_error(connection_id, e.code, e.message, e.details, request_id)
            return None

        key = channel_key(config)

        async with self._lock:
            connection = self._connections.get(connection_id)
            if not connection:
                return None

            # A key owned by another consumer would never reach our callback
            rejected = key not in self._key_subscribers and self._registry.is_active(key)
            if not rejected:
                if key not in self._key_subscribers:
                    self._key_subscribers[key] = set()
                    await self._registry.subscribe(
                        config, partial(self._on_change, key), on_lost=self._on_lost
                    )
                connection.subscriptions.add(key)
                self._key_subscribers[key].add(connection_id)
                subscriber_count = len(self._key_subscribers[key])

        if rejected:
            error = ChannelInUseError(key)
            await self.send_error(
                connection_id, error.code, error.message, error.details, request_id
            )
            return None

        await self.send_to_connection(
            connection_id,
            SubscribedEvent(key=key, subscriber_count=subscriber_count, request_id=request_id),
        )
        logger.debug(f"Connection {connection_id} subscribed to {key}")
        return key

    async def unsubscribe(
        self, connection_id: str, key: str, request_id: Optional[str] = None
    ) -> bool:
        """Unsubscribe a connection from a channel key.

        Returns:
            True if unsubscribed, False if the connection was not subscribed
        """
        async with self._lock:
            connection = self._connections.get(connection_id)
            if not connection or key not in connection.subscriptions:
                return False
            await self._unsubscribe_internal(connection, key)

        await self.send_to_connection(
            connection_id, UnsubscribedEvent(key=key, request_id=request_id)
        )
        return True

    async def _unsubscribe_internal(self, connection: Connection, key: str) -> None:
        connection.subscriptions.discard(key)

        subscribers = self._key_subscribers.get(key)
        if subscribers is None:
            return
        subscribers.discard(connection.connection_id)
        if not subscribers:
            del self._key_subscribers[key]
            await self._registry.unsubscribe(key)

        logger.debug(f"Connection {connection.connection_id} unsubscribed from {key}")

    async def send_to_connection(self, connection_id: str, event: BaseEvent) -> bool:
        """Send an event to a specific connection.

        Returns:
            True if sent, False if connection not found or the send failed
        """
        connection = self._connections.get(connection_id)
        if not connection:
            return False

        try:
            message = WebSocketMessage.from_event(event)
            await connection.websocket.send_json(message.model_dump(mode="json"))
            return True
        except Exception as e:
            logger.error(f"Failed to send to {connection_id}: {e}")
            # Connection may be dead, schedule disconnect
            asyncio.create_task(self.disconnect(connection_id, str(e)))
            return False

    async def broadcast_to_key(self, key: str, event: BaseEvent) -> int:
        """Send an event to every connection subscribed to ``key``."""
        sent = 0
        for connection_id in list(self._key_subscribers.get(key, ())):
            if await self.send_to_connection(connection_id, event):
                sent += 1
        return sent

    async def handle_ping(self, connection_id: str, request_id: Optional[str] = None) -> None:
        """Answer a client ping with a pong."""
        if connection_id in self._connections:
            await self.send_to_connection(connection_id, PongEvent(request_id=request_id))

    async def send_error(
        self,
        connection_id: str,
        code: str,
        message: str,
        details: Optional[dict] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """Send an error event to a connection."""
        await self.send_to_connection(
            connection_id,
            ErrorEvent(code=code, message=message, details=details, request_id=request_id),
        )

    async def close_all(self) -> None:
        for connection_id in list(self._connections):
            await self.disconnect(connection_id, "shutdown")

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def get_key_subscribers(self, key: str) -> set[str]:
        return set(self._key_subscribers.get(key, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get_stats(self) -> dict[str, Any]:
        """Get gateway statistics."""
        return {
            "total_connections": len(self._connections),
            "keys": {key: len(ids) for key, ids in self._key_subscribers.items()},
        }

    # -------------------------------------------------------------------------
    # Registry callbacks
    # -------------------------------------------------------------------------

    async def _on_change(self, key: str, change: ChangeEvent) -> None:
        await self.broadcast_to_key(key, ChangeNotification(key=key, change=change))

    async def _on_lost(self, key: str, error: Exception) -> None:
        async with self._lock:
            connection_ids = self._key_subscribers.pop(key, set())
            for connection_id in connection_ids:
                connection = self._connections.get(connection_id)
                if connection:
                    connection.subscriptions.discard(key)

        event = SubscriptionLostEvent(key=key, reason=str(error))
        for connection_id in connection_ids:
            await self.send_to_connection(connection_id, event)
        logger.warning(f"Subscription {key} lost; notified {len(connection_ids)} connection(s)")
