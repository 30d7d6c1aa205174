"""Realtime schemas: normalized change events, presence rows and gateway events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Change Feed
# =============================================================================


class ChangeEventType(str, Enum):
    """Row-level change events a subscription can listen for."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ANY = "*"


class ChangeEvent(BaseModel):
    """One row-level change delivered by the change feed."""

    event_type: ChangeEventType = Field(..., description="INSERT, UPDATE or DELETE")
    schema_name: str = Field(default="public", description="Source schema")
    table: str = Field(..., description="Source table")
    new: dict[str, Any] = Field(default_factory=dict, description="Row after the change")
    old: dict[str, Any] = Field(default_factory=dict, description="Row before the change")
    commit_timestamp: Optional[str] = Field(None, description="Commit time reported by the store")

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Build from a realtime ``postgres_changes`` payload.

        Accepts both the nested form (``{"data": {"type", "record", ...}}``)
        and the flat form (``{"eventType", "new", "old", ...}``).
        """
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        event_type = data.get("type") or data.get("eventType") or data.get("event_type")
        new = data.get("record") if "record" in data else data.get("new")
        old = data.get("old_record") if "old_record" in data else data.get("old")
        return cls(
            event_type=event_type,
            schema_name=data.get("schema") or "public",
            table=data.get("table") or "",
            new=new or {},
            old=old or {},
            commit_timestamp=data.get("commit_timestamp"),
        )


# =============================================================================
# Presence
# =============================================================================


class PresenceStatus(str, Enum):
    """Self-reported user status."""

    ONLINE = "online"
    OFFLINE = "offline"
    IDLE = "idle"
    DND = "dnd"


class PresenceRecord(BaseModel):
    """One row of the presence table."""

    user_id: str
    status: PresenceStatus
    last_seen: datetime = Field(default_factory=utcnow)

    def to_row(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "last_seen": self.last_seen.isoformat(),
        }


class AuthUser(BaseModel):
    """The user behind the current session."""

    id: str
    email: Optional[str] = None


# =============================================================================
# Gateway Events
# =============================================================================


class EventType(str, Enum):
    """Types of gateway WebSocket messages."""

    # Connection events
    CONNECT = "connect"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"

    # Subscription events
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIPTION_LOST = "subscription.lost"

    # Data events
    CHANGE = "change"

    # Presence and typing
    PRESENCE_UPDATE = "presence.update"
    TYPING = "typing"


class BaseEvent(BaseModel):
    """Base schema for all gateway events."""

    event: EventType = Field(..., description="Event type")
    timestamp: datetime = Field(default_factory=utcnow, description="Event timestamp")
    request_id: Optional[str] = Field(None, description="Client request ID for correlation")


class ConnectEvent(BaseEvent):
    """Sent when a connection is established."""

    event: EventType = EventType.CONNECT
    connection_id: str = Field(..., description="Unique connection identifier")
    user_id: str = Field(..., description="Session user ID")


class PongEvent(BaseEvent):
    """Pong response to ping."""

    event: EventType = EventType.PONG


class ErrorEvent(BaseEvent):
    """Error event."""

    event: EventType = EventType.ERROR
    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    details: Optional[dict[str, Any]] = Field(None, description="Additional error details")


class SubscribeRequest(BaseModel):
    """Payload of a ``subscribe`` message."""

    model_config = ConfigDict(populate_by_name=True)

    table: str = Field(..., description="Table to watch")
    event: ChangeEventType = Field(default=ChangeEventType.ANY, description="Change event")
    schema_name: str = Field(default="public", alias="schema", description="Schema")
    filter: Optional[str] = Field(None, description="Row filter, e.g. channel_id=eq.42")


class SubscribedEvent(BaseEvent):
    """Confirmation of a subscription."""

    event: EventType = EventType.SUBSCRIBED
    key: str = Field(..., description="Channel key")
    subscriber_count: int = Field(default=0, description="Local connections on this key")


class UnsubscribedEvent(BaseEvent):
    """Confirmation of an unsubscription."""

    event: EventType = EventType.UNSUBSCRIBED
    key: str = Field(..., description="Channel key")


class SubscriptionLostEvent(BaseEvent):
    """A channel exhausted its reconnect attempts; no further changes will arrive."""

    event: EventType = EventType.SUBSCRIPTION_LOST
    key: str = Field(..., description="Channel key")
    reason: str = Field(..., description="Why the channel was dropped")


class ChangeNotification(BaseEvent):
    """A change event relayed to subscribed connections."""

    event: EventType = EventType.CHANGE
    key: str = Field(..., description="Channel key")
    change: ChangeEvent = Field(..., description="The row change")


class PresenceUpdateEvent(BaseEvent):
    """The session user's status was written."""

    event: EventType = EventType.PRESENCE_UPDATE
    user_id: str = Field(..., description="User whose status changed")
    status: PresenceStatus = Field(..., description="New status")
    last_seen: datetime = Field(..., description="Time of the write")


class TypingEvent(BaseEvent):
    """The session user's typing state in a channel."""

    event: EventType = EventType.TYPING
    channel_id: str = Field(..., description="Chat channel ID")
    is_typing: bool = Field(..., description="Whether the user is typing")


class WebSocketMessage(BaseModel):
    """Wire envelope: ``{"type": ..., "payload": {...}}``."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None

    @classmethod
    def from_event(cls, event: BaseEvent) -> "WebSocketMessage":
        payload = event.model_dump(mode="json", exclude={"event", "request_id"})
        return cls(type=event.event.value, payload=payload, request_id=event.request_id)
