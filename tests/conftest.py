"""
Pytest configuration and fixtures for RelayChat tests.
"""

import asyncio
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from relaychat.backends.memory import InMemoryBackend
from relaychat.core.config import Settings
from relaychat.main import create_app
from relaychat.realtime.policy import ReconnectPolicy
from relaychat.realtime.presence import PresenceCoordinator
from relaychat.realtime.registry import SubscriptionRegistry
from relaychat.realtime.transport import ChangeFeedClient
from relaychat.schemas.realtime import AuthUser

USER_ID = "user-1"


async def _settle(rounds: int = 50) -> None:
    """Let call_soon deliveries and spawned tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class RecordingSleep:
    """Replacement for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class GatedSleep:
    """Replacement for asyncio.sleep that blocks until released."""

    def __init__(self) -> None:
        self.delays: list[float] = []
        self._gate: asyncio.Event | None = None

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._gate is None:
            self._gate = asyncio.Event()
        await self._gate.wait()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()


@pytest.fixture
def settle():
    return _settle


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def gated_sleep() -> GatedSleep:
    return GatedSleep()


@pytest.fixture
def user() -> AuthUser:
    return AuthUser(id=USER_ID, email="user-1@example.com")


@pytest.fixture
def backend(user: AuthUser) -> InMemoryBackend:
    """In-memory backend with a signed-in user."""
    return InMemoryBackend(user)


@pytest.fixture
def feed(backend: InMemoryBackend):
    return backend.transport


@pytest.fixture
def store(backend: InMemoryBackend):
    return backend.store


@pytest.fixture
def registry(backend: InMemoryBackend, sleeper: RecordingSleep) -> SubscriptionRegistry:
    """Registry with the default policy (3 retries, 1000 ms base) and instant sleeps."""
    return SubscriptionRegistry(
        ChangeFeedClient(backend.transport),
        ReconnectPolicy(max_retries=3, base_delay_ms=1000),
        sleep=sleeper,
    )


@pytest.fixture
def coordinator(registry: SubscriptionRegistry, backend: InMemoryBackend) -> PresenceCoordinator:
    return PresenceCoordinator(registry, backend.store, backend.auth)


@pytest.fixture
def mock_websocket():
    """Create a mock WebSocket connection."""
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_json = AsyncMock()
    return ws


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="testing",
        backend="memory",
        realtime_base_delay_ms=10,
        typing_idle_timeout_ms=60_000,
    )


@pytest.fixture
def client(test_settings: Settings, backend: InMemoryBackend) -> Generator[TestClient, None, None]:
    """Test client running the app lifespan against the in-memory backend."""
    app = create_app(test_settings, backend=backend)
    with TestClient(app) as test_client:
        yield test_client
