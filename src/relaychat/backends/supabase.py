"""Supabase backend: PostgREST store, auth session and realtime channels.

One ``supabase.AsyncClient`` serves all three roles. The client itself is the
change-feed transport: ``client.channel(topic)`` returns a realtime-py
``AsyncRealtimeChannel``.
"""

from collections.abc import Sequence
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import AsyncClient, AuthError, acreate_client

from relaychat.core.config import Settings
from relaychat.core.exceptions import AuthenticationError, StoreWriteError
from relaychat.core.logging import get_logger
from relaychat.realtime.keys import RowFilter
from relaychat.schemas.realtime import AuthUser

logger = get_logger(__name__)


class SupabaseStore:
    """Row store over the Supabase PostgREST API."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def upsert(self, table: str, row: dict[str, Any]) -> list[dict[str, Any]]:
        try:
            response = await self._client.table(table).upsert(row).execute()
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"Upsert into {table} failed: {e}")
            raise StoreWriteError(table, "upsert", original_error=e) from e
        return list(response.data or [])

    async def select(
        self,
        table: str,
        filters: Sequence[RowFilter] = (),
        columns: str = "*",
    ) -> list[dict[str, Any]]:
        query = self._client.table(table).select(columns)
        for row_filter in filters:
            query = query.filter(row_filter.column, row_filter.operator.value, row_filter.value)
        try:
            response = await query.execute()
        except (APIError, httpx.HTTPError) as e:
            logger.error(f"Select from {table} failed: {e}")
            raise StoreWriteError(table, "select", original_error=e) from e
        return list(response.data or [])


class SupabaseAuth:
    """Resolves the signed-in user from the client's session."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client

    async def get_current_user(self) -> Optional[AuthUser]:
        try:
            response = await self._client.auth.get_user()
        except AuthError as e:
            logger.warning(f"Could not resolve session user: {e}")
            return None
        if response is None or response.user is None:
            return None
        return AuthUser(id=str(response.user.id), email=response.user.email)


class SupabaseBackend:
    """Store, auth and change feed sharing one Supabase client."""

    def __init__(self, client: AsyncClient) -> None:
        self.client = client
        self.store = SupabaseStore(client)
        self.auth = SupabaseAuth(client)
        self.transport = client

    @classmethod
    async def connect(cls, settings: Settings) -> "SupabaseBackend":
        """Create the client and restore the user session, if configured.

        Raises:
            AuthenticationError: If the configured session tokens are rejected
        """
        client = await acreate_client(settings.supabase_url, settings.supabase_anon_key)
        if settings.supabase_access_token and settings.supabase_refresh_token:
            try:
                await client.auth.set_session(
                    settings.supabase_access_token, settings.supabase_refresh_token
                )
            except AuthError as e:
                raise AuthenticationError(f"Supabase session rejected: {e}") from e
        logger.info(f"Supabase backend connected: {settings.supabase_url}")
        return cls(client)

    async def close(self) -> None:
        await self.client.remove_all_channels()
        logger.info("Supabase backend closed")
