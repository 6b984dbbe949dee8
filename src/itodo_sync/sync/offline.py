# src/itodo_sync/sync/offline.py

from __future__ import annotations

from typing import Any

from ..core.errors import RemoteError
from ..storage.models import EntityType


class OfflineRemote:
    """
    Remote backend used when no remote URL is configured.

    Behavior:
    - ping() -> False, so the network monitor stays offline and nothing is drained
    - every other call raises a NETWORK-class RemoteError (never a silent success),
      so queued work stays in the queue until a real backend is configured
    """

    def _unavailable(self, what: str) -> RemoteError:
        return RemoteError(
            f"{what}: no remote backend configured (set ITODO_REMOTE_URL)",
            code="NETWORK_ERROR",
        )

    async def add(self, entity_type: EntityType, row: dict[str, Any]) -> dict[str, Any]:
        raise self._unavailable(f"add {entity_type}")

    async def update(self, entity_type: EntityType, entity_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        raise self._unavailable(f"update {entity_type}")

    async def delete_task(self, task_id: str, *, permanent: bool = False) -> dict[str, Any]:
        raise self._unavailable("delete task")

    async def delete_task_list(self, list_id: str) -> dict[str, Any]:
        raise self._unavailable("delete taskList")

    async def fetch_updated(self, entity_type: EntityType, owner_id: str, since_iso: str) -> list[dict[str, Any]]:
        raise self._unavailable(f"fetch {entity_type}")

    async def exists(self, entity_type: EntityType, entity_id: str) -> bool:
        raise self._unavailable(f"exists {entity_type}")

    async def ping(self) -> bool:
        return False

    async def aclose(self) -> None:
        return
