"""
Presence endpoints.

Read any user's stored status and set the session user's own status.
"""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel, Field

from relaychat.api.deps import CurrentUser, Runtime
from relaychat.schemas.realtime import PresenceStatus

router = APIRouter()


class StatusUpdate(BaseModel):
    """Request body of a status update."""

    status: PresenceStatus = Field(..., description="New status")


class PresenceResponse(BaseModel):
    """A user's presence status."""

    user_id: str
    status: PresenceStatus
    last_seen: datetime | None = None


@router.put("/status", response_model=PresenceResponse)
async def update_status(
    body: StatusUpdate,
    runtime: Runtime,
    current_user: CurrentUser,
) -> PresenceResponse:
    """
    Set the session user's status.

    Writes the presence row with a fresh ``last_seen``; observers of the
    user's row are notified through the change feed.
    """
    await runtime.ensure_presence()
    record = await runtime.presence.update_status(body.status)
    return PresenceResponse(
        user_id=record.user_id,
        status=record.status,
        last_seen=record.last_seen,
    )


@router.get("/{user_id}", response_model=PresenceResponse)
async def get_user_status(user_id: str, runtime: Runtime) -> PresenceResponse:
    """Get a user's stored status. Users without a presence row are offline."""
    status = await runtime.presence.get_user_status(user_id)
    return PresenceResponse(user_id=user_id, status=status)
