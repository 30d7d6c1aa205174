"""Realtime WebSocket API endpoints.

Provides:
- WebSocket endpoint relaying change-feed subscriptions to UI clients
- REST endpoint for subscription statistics
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from relaychat.api.deps import CurrentUser, Runtime
from relaychat.core.exceptions import RelayChatException, StoreWriteError
from relaychat.core.logging import get_logger
from relaychat.realtime.runtime import RealtimeRuntime
from relaychat.schemas.realtime import (
    EventType,
    PresenceStatus,
    PresenceUpdateEvent,
    SubscribeRequest,
    TypingEvent,
)

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Response Schemas
# =============================================================================


class ChannelInfo(BaseModel):
    """State of one registry subscription."""

    key: str = Field(..., description="Channel key")
    state: str = Field(..., description="Subscription state")
    attempts: int = Field(..., description="Reconnect attempts since the last successful join")
    connections: int = Field(default=0, description="WebSocket connections relaying this key")


class ChannelStats(BaseModel):
    """Subscription and connection statistics."""

    total_subscriptions: int = Field(..., description="Active registry subscriptions")
    total_connections: int = Field(..., description="Active WebSocket connections")
    channels: list[ChannelInfo] = Field(default_factory=list, description="Per-key state")


# =============================================================================
# WebSocket Endpoint
# =============================================================================


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, runtime: Runtime):
    """
    WebSocket endpoint relaying row changes of the backing store.

    Connect with: ws://host/api/v1/realtime/ws

    ## Message Protocol

    All messages are JSON with format:
    ```json
    {"type": "event_type", "payload": {...}, "request_id": "optional"}
    ```

    ## Client -> Server Messages

    - **ping**: Keepalive ping
    - **subscribe**: Watch a table
      ```json
      {"type": "subscribe", "payload": {"table": "messages", "event": "INSERT", "filter": "channel_id=eq.42"}}
      ```
    - **unsubscribe**: Stop watching a channel key
      ```json
      {"type": "unsubscribe", "payload": {"key": "realtime:public:messages:INSERT:channel_id=eq.42"}}
      ```
    - **presence.update**: Set the session user's status
      ```json
      {"type": "presence.update", "payload": {"status": "idle"}}
      ```
    - **typing**: Report typing activity in a chat channel
      ```json
      {"type": "typing", "payload": {"channel_id": "42", "is_typing": true}}
      ```

    ## Server -> Client Messages

    - **connect**, **pong**, **error**
    - **subscribed** / **unsubscribed**: Subscription confirmed
    - **change**: Row change on a subscribed key
    - **subscription.lost**: Key dropped after exhausting reconnect attempts
    - **presence.update**, **typing**: Acknowledgements
    """
    if not runtime.settings.enable_websockets:
        await websocket.close(code=4003, reason="WebSockets are disabled")
        return

    user = await runtime.backend.auth.get_current_user()
    if user is None:
        await websocket.close(code=4001, reason="No user session")
        return

    try:
        await runtime.ensure_presence()
    except StoreWriteError as e:
        logger.warning(f"Presence not started for {user.id}: {e.message}")

    gateway = runtime.gateway
    connection = await gateway.connect(websocket, user.id)
    connection_id = connection.connection_id

    try:
        while True:
            try:
                data = await websocket.receive_json()
            except json.JSONDecodeError:
                await gateway.send_error(
                    connection_id,
                    code="invalid_json",
                    message="Invalid JSON message",
                )
                continue

            msg_type = data.get("type", "")
            payload_data = data.get("payload") or {}
            request_id = data.get("request_id")

            try:
                await _handle_message(runtime, connection_id, msg_type, payload_data, request_id)
            except RelayChatException as e:
                await gateway.send_error(
                    connection_id, e.code, e.message, e.details, request_id=request_id
                )
            except Exception as e:
                logger.exception(f"Error handling message: {e}")
                await gateway.send_error(
                    connection_id,
                    code="internal_error",
                    message=str(e),
                    request_id=request_id,
                )

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {connection_id}")
    except Exception as e:
        logger.exception(f"WebSocket error: {e}")
    finally:
        await gateway.disconnect(connection_id)


async def _handle_message(
    runtime: RealtimeRuntime,
    connection_id: str,
    msg_type: str,
    payload: dict[str, Any],
    request_id: Optional[str],
) -> None:
    """Handle incoming WebSocket message."""
    gateway = runtime.gateway

    # Ping
    if msg_type == EventType.PING.value:
        await gateway.handle_ping(connection_id, request_id)
        return

    # Subscribe
    if msg_type == EventType.SUBSCRIBE.value:
        try:
            request = SubscribeRequest.model_validate(payload)
        except ValidationError as e:
            await gateway.send_error(
                connection_id,
                code="invalid_payload",
                message="Invalid subscribe payload",
                details={"errors": e.errors(include_url=False, include_context=False)},
                request_id=request_id,
            )
            return

        await gateway.subscribe(connection_id, request, request_id)
        return

    # Unsubscribe
    if msg_type == EventType.UNSUBSCRIBE.value:
        key = payload.get("key")
        if not key:
            await gateway.send_error(
                connection_id,
                code="missing_key",
                message="Channel key is required for unsubscribe",
                request_id=request_id,
            )
            return

        if not await gateway.unsubscribe(connection_id, key, request_id):
            await gateway.send_error(
                connection_id,
                code="not_subscribed",
                message=f"Not subscribed to {key}",
                request_id=request_id,
            )
        return

    # Presence update
    if msg_type == EventType.PRESENCE_UPDATE.value:
        try:
            status = PresenceStatus(payload.get("status"))
        except ValueError:
            await gateway.send_error(
                connection_id,
                code="invalid_status",
                message=f"Status must be one of {[s.value for s in PresenceStatus]}",
                request_id=request_id,
            )
            return

        await runtime.ensure_presence()
        record = await runtime.presence.update_status(status)
        await gateway.send_to_connection(
            connection_id,
            PresenceUpdateEvent(
                user_id=record.user_id,
                status=record.status,
                last_seen=record.last_seen,
                request_id=request_id,
            ),
        )
        return

    # Typing
    if msg_type == EventType.TYPING.value:
        channel_id = payload.get("channel_id")
        if not channel_id:
            await gateway.send_error(
                connection_id,
                code="missing_fields",
                message="Required fields: ['channel_id']",
                request_id=request_id,
            )
            return

        is_typing = bool(payload.get("is_typing", True))
        if is_typing:
            await runtime.typing.keystroke(str(channel_id))
        else:
            await runtime.typing.stop(str(channel_id))
        await gateway.send_to_connection(
            connection_id,
            TypingEvent(channel_id=str(channel_id), is_typing=is_typing, request_id=request_id),
        )
        return

    # Unknown message type
    await gateway.send_error(
        connection_id,
        code="unknown_message_type",
        message=f"Unknown message type: {msg_type}",
        request_id=request_id,
    )


# =============================================================================
# REST Endpoints
# =============================================================================


@router.get("/channels", response_model=ChannelStats)
async def get_channel_stats(runtime: Runtime, current_user: CurrentUser) -> ChannelStats:
    """
    Get subscription statistics.

    Lists every active channel key with its state and reconnect attempts.
    Requires a signed-in session.
    """
    registry_stats = runtime.registry.get_stats()
    gateway = runtime.gateway

    return ChannelStats(
        total_subscriptions=registry_stats["total_subscriptions"],
        total_connections=gateway.connection_count,
        channels=[
            ChannelInfo(
                key=key,
                state=info["state"],
                attempts=info["attempts"],
                connections=len(gateway.get_key_subscribers(key)),
            )
            for key, info in sorted(registry_stats["channels"].items())
        ],
    )
