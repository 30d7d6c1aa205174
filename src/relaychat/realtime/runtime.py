"""Process-wide realtime services, built once at startup and torn down at shutdown."""

from dataclasses import dataclass
from typing import Optional

from relaychat.backends import Backend, create_backend
from relaychat.core.config import Settings
from relaychat.core.exceptions import AuthenticationError, StoreWriteError
from relaychat.core.logging import get_logger
from relaychat.realtime.gateway import ConnectionGateway
from relaychat.realtime.policy import ReconnectPolicy
from relaychat.realtime.presence import PresenceCoordinator
from relaychat.realtime.registry import SubscriptionRegistry
from relaychat.realtime.transport import ChangeFeedClient
from relaychat.realtime.typing_status import TypingNotifier

logger = get_logger(__name__)


@dataclass
class RealtimeRuntime:
    """Owns the backend and every realtime service built on it."""

    settings: Settings
    backend: Backend
    feed: ChangeFeedClient
    registry: SubscriptionRegistry
    presence: PresenceCoordinator
    typing: TypingNotifier
    gateway: ConnectionGateway

    @classmethod
    def build(cls, settings: Settings, backend: Backend) -> "RealtimeRuntime":
        feed = ChangeFeedClient(backend.transport)
        registry = SubscriptionRegistry(
            feed,
            ReconnectPolicy(
                max_retries=settings.realtime_max_retries,
                base_delay_ms=settings.realtime_base_delay_ms,
            ),
        )
        return cls(
            settings=settings,
            backend=backend,
            feed=feed,
            registry=registry,
            presence=PresenceCoordinator(
                registry, backend.store, backend.auth, table=settings.presence_table
            ),
            typing=TypingNotifier(
                backend.store,
                backend.auth,
                table=settings.typing_table,
                idle_timeout_ms=settings.typing_idle_timeout_ms,
            ),
            gateway=ConnectionGateway(registry),
        )

    @classmethod
    async def start(
        cls, settings: Settings, backend: Optional[Backend] = None
    ) -> "RealtimeRuntime":
        """Create the services and bring the signed-in user online, if any."""
        if backend is None:
            backend = await create_backend(settings)
        runtime = cls.build(settings, backend)

        if not await runtime.ensure_presence():
            logger.info("No user session; presence starts on first sign-in")
        return runtime

    async def ensure_presence(self) -> bool:
        """Bring the session user online unless presence is already running.

        Called at startup and again by every request that acts for the
        session user, so a sign-in after startup still starts presence.

        Returns:
            Whether presence is running afterwards
        """
        if self.presence.initialized:
            return True
        user = await self.backend.auth.get_current_user()
        if user is None:
            return False
        await self.presence.initialize(user.id)
        return True

    async def shutdown(self) -> None:
        """Mark the user offline, then close every subscription and the backend.

        A session user is marked offline even if presence never started.
        """
        if self.presence.initialized or await self.backend.auth.get_current_user():
            try:
                await self.presence.cleanup()
            except (AuthenticationError, StoreWriteError) as e:
                logger.warning(f"Presence cleanup incomplete: {e.message}")

        try:
            await self.typing.stop_all()
        except (AuthenticationError, StoreWriteError) as e:
            logger.warning(f"Typing cleanup incomplete: {e.message}")

        await self.gateway.close_all()
        await self.registry.close_all()
        await self.backend.close()
        logger.info("Realtime runtime stopped")

    def get_stats(self) -> dict:
        return {
            "backend": self.settings.backend,
            "presence_initialized": self.presence.initialized,
            "subscriptions": self.registry.get_stats(),
            "gateway": self.gateway.get_stats(),
        }
