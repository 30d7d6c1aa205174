"""Backing store, auth and change-feed implementations."""

from relaychat.backends.base import AuthProvider, Backend, Store
from relaychat.backends.memory import InMemoryBackend
from relaychat.backends.supabase import SupabaseBackend
from relaychat.core.config import Settings
from relaychat.core.exceptions import ConfigurationError
from relaychat.schemas.realtime import AuthUser


async def create_backend(settings: Settings) -> Backend:
    """Build the backend selected by ``settings.backend``."""
    if settings.backend == "memory":
        user = AuthUser(id=settings.memory_user_id) if settings.memory_user_id else None
        return InMemoryBackend(user)

    if not settings.supabase_enabled:
        raise ConfigurationError(
            "SUPABASE_URL and SUPABASE_ANON_KEY must be set for the supabase backend",
            field="backend",
        )
    return await SupabaseBackend.connect(settings)


__all__ = [
    "AuthProvider",
    "Backend",
    "Store",
    "InMemoryBackend",
    "SupabaseBackend",
    "create_backend",
]
