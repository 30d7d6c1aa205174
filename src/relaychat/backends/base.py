"""Interfaces of the hosted backend: row store, auth session and change feed."""

from collections.abc import Sequence
from typing import Any, Optional, Protocol

from relaychat.realtime.keys import RowFilter
from relaychat.realtime.transport import ChangeFeedTransport
from relaychat.schemas.realtime import AuthUser


class Store(Protocol):
    """Row store. Every failure surfaces as ``StoreWriteError``."""

    async def upsert(self, table: str, row: dict[str, Any]) -> list[dict[str, Any]]: ...

    async def select(
        self,
        table: str,
        filters: Sequence[RowFilter] = (),
        columns: str = "*",
    ) -> list[dict[str, Any]]: ...


class AuthProvider(Protocol):
    """Resolves the user behind the current session."""

    async def get_current_user(self) -> Optional[AuthUser]: ...


class Backend(Protocol):
    """A store, an auth provider and a change-feed transport sharing one session."""

    store: Store
    auth: AuthProvider
    transport: ChangeFeedTransport

    async def close(self) -> None: ...
