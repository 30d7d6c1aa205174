"""API v1 routes."""

from fastapi import APIRouter

from relaychat.api.v1 import health, presence, realtime

router = APIRouter()

# Include all v1 routes
router.include_router(health.router, tags=["health"])
router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
router.include_router(presence.router, prefix="/presence", tags=["presence"])
