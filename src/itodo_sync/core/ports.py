# src/itodo_sync/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the sync engine.

The engine depends on Protocols instead of concrete implementations.
This keeps the remote backend, session and network sources swappable and makes
testing easier (see tests/fakes.py).
"""

from typing import Any, Callable, Protocol

from ..storage.models import EntityType

Unsubscribe = Callable[[], None]
SessionCallback = Callable[[str | None], None]
# Called with the new user id (None after sign-out).


class RemoteBackend(Protocol):
    """
    Owner-scoped CRUD over remote rows (remote column names, ISO timestamps).

    Every method raises on failure; core.errors.classify_error() decides
    whether the failure is retryable.
    """

    async def add(self, entity_type: EntityType, row: dict[str, Any]) -> dict[str, Any]: ...

    async def update(
            self,
            entity_type: EntityType,
            entity_id: str,
            fields: dict[str, Any],
    ) -> dict[str, Any]: ...

    async def delete_task(self, task_id: str, *, permanent: bool = False) -> dict[str, Any]: ...

    async def delete_task_list(self, list_id: str) -> dict[str, Any]: ...

    async def fetch_updated(
            self,
            entity_type: EntityType,
            owner_id: str,
            since_iso: str,
    ) -> list[dict[str, Any]]: ...

    async def exists(self, entity_type: EntityType, entity_id: str) -> bool: ...

    async def ping(self) -> bool: ...


class SessionProvider(Protocol):
    def current_user_id(self) -> str | None: ...
    def access_token(self) -> str | None: ...
    def subscribe(self, callback: SessionCallback) -> Unsubscribe: ...


class NetworkSignal(Protocol):
    @property
    def is_online(self) -> bool: ...

    def on_restore(self, callback: Callable[[], None]) -> Unsubscribe: ...
