"""
FastAPI dependency injection functions.

The realtime runtime is created in the application lifespan and stored on
``app.state``; routes reach it, and the session user, through these
dependencies.
"""

from typing import Annotated

from fastapi import Depends
from starlette.requests import HTTPConnection

from relaychat.core.exceptions import AuthenticationError, ServiceUnavailableError
from relaychat.realtime.runtime import RealtimeRuntime
from relaychat.schemas.realtime import AuthUser


def get_runtime(connection: HTTPConnection) -> RealtimeRuntime:
    """
    Get the realtime runtime of the running application.

    Works for both HTTP requests and WebSocket connections.

    Raises:
        ServiceUnavailableError: If the application has not finished starting
    """
    runtime = getattr(connection.app.state, "runtime", None)
    if runtime is None:
        raise ServiceUnavailableError("Realtime runtime is not running")
    return runtime


Runtime = Annotated[RealtimeRuntime, Depends(get_runtime)]


async def get_current_user(runtime: Runtime) -> AuthUser:
    """
    Get the user behind the backend session.

    Raises:
        AuthenticationError: If no user is signed in
    """
    user = await runtime.backend.auth.get_current_user()
    if user is None:
        raise AuthenticationError()
    return user


CurrentUser = Annotated[AuthUser, Depends(get_current_user)]
