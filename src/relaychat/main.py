"""
RelayChat FastAPI Application Entry Point.

This module creates and configures the FastAPI application instance.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relaychat.api.v1 import router as v1_router
from relaychat.backends import Backend
from relaychat.core.config import Settings, get_settings
from relaychat.core.exceptions import RelayChatException
from relaychat.core.logging import get_logger, setup_logging
from relaychat.realtime.runtime import RealtimeRuntime

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Starts the realtime runtime (backend session, presence) and tears it
    down on shutdown: the user is marked offline and every channel closed.
    """
    settings: Settings = app.state.settings

    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment} (backend: {settings.backend})")

    try:
        app.state.runtime = await RealtimeRuntime.start(settings, app.state.backend)
    except Exception as e:
        logger.error(f"Failed to start realtime runtime: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down...")
    runtime: RealtimeRuntime = app.state.runtime
    app.state.runtime = None
    await runtime.shutdown()


def create_app(settings: Settings | None = None, backend: Backend | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to run with; defaults to the environment's
        backend: Prebuilt backend; by default one is created from settings

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()

    # Setup logging
    setup_logging(
        log_level=settings.log_level,
        json_logs=settings.environment == "production",
    )

    # Create FastAPI app
    app = FastAPI(
        title=settings.app_name,
        description="Realtime subscriptions and presence for chat clients",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.backend = backend
    app.state.runtime = None

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register exception handlers
    register_exception_handlers(app, settings)

    # Register routes
    app.include_router(v1_router, prefix=settings.api_v1_prefix)

    @app.get("/", include_in_schema=False)
    async def root() -> dict:
        """Root endpoint - returns basic info."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs" if settings.debug else None,
        }

    return app


def _error_body(code: str, message: str, details: dict | None = None) -> dict:
    body: dict = {"code": code, "message": message}
    if details is not None:
        body["details"] = details
    return {"error": body}


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """
    Map exceptions onto ``{"error": {code, message, details}}`` responses.

    Store and transport failures (5xx) are logged with their code; client
    errors are not.
    """

    @app.exception_handler(RelayChatException)
    async def relaychat_exception_handler(
        request: Request,
        exc: RelayChatException,
    ) -> JSONResponse:
        if exc.status_code >= 500:
            logger.warning(
                f"{request.method} {request.url.path} failed: {exc.message}",
                extra={"code": exc.code, "details": exc.details},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=_error_body(
                "VALIDATION_ERROR", "Request validation failed", {"errors": errors}
            ),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        logger.exception(f"Unexpected error on {request.method} {request.url.path}: {exc}")

        # Internal details stay out of production responses
        if settings.environment == "production":
            message = "An unexpected error occurred"
        else:
            message = str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body("INTERNAL_ERROR", message),
        )


# Create the application instance
app = create_app()
