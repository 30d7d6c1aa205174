"""
Health check endpoints.

Provides endpoints for monitoring application health and readiness.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from relaychat.core.config import Settings
from relaychat.core.logging import get_logger
from relaychat.realtime.registry import SubscriptionState

logger = get_logger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    environment: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness check response model."""

    status: str
    backend: str
    session: str
    subscriptions: int
    degraded_subscriptions: int


def _settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Basic health check endpoint.

    Returns application status without checking dependencies.
    """
    settings = _settings(request)
    return HealthResponse(
        status="healthy",
        environment=settings.environment,
        version=settings.app_version,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Ready once the realtime runtime is running. Subscriptions that are
    reconnecting are reported as degraded but do not fail the check.
    """
    settings = _settings(request)
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        return ReadinessResponse(
            status="unavailable",
            backend=settings.backend,
            session="unknown",
            subscriptions=0,
            degraded_subscriptions=0,
        )

    try:
        user = await runtime.backend.auth.get_current_user()
        session = "signed_in" if user else "anonymous"
    except Exception as e:
        logger.warning(f"Readiness session check failed: {e}")
        session = f"error: {e}"

    registry = runtime.registry
    keys = registry.list_active_keys()
    degraded = [key for key in keys if registry.get_state(key) != SubscriptionState.SUBSCRIBED]

    return ReadinessResponse(
        status="ready",
        backend=settings.backend,
        session=session,
        subscriptions=len(keys),
        degraded_subscriptions=len(degraded),
    )
