# src/itodo_sync/sync/remote.py

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.errors import NotAuthenticatedError, RemoteError
from ..core.ports import SessionProvider
from ..storage.models import DeleteState, EntityType

logger = logging.getLogger(__name__)

_TABLES = {
    EntityType.TASK: "tasks",
    EntityType.TASK_LIST: "task_lists",
}


def _build_timeout(timeout_s: float) -> httpx.Timeout:
    """Connect fast, allow slower reads; everything bounded by timeout_s."""
    total = max(1.0, float(timeout_s))
    return httpx.Timeout(timeout=total, connect=min(10.0, total))


def _error_from_response(response: httpx.Response) -> RemoteError:
    code: str | None = None
    message = response.reason_phrase or "HTTP error"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = str(body["code"]) if body.get("code") is not None else None
        message = str(body.get("message") or body.get("error") or message)
    return RemoteError(message, status=response.status_code, code=code)


class SupabaseRemote:
    """
    Remote backend over a Supabase/PostgREST REST endpoint.

    Rows are owner-scoped: every write and read filters on user_id of the
    current session. Transport failures are raised as RemoteError with
    code NETWORK_ERROR / TIMEOUT so classify_error() treats them as NETWORK.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: SessionProvider,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session
        self._timeout = _build_timeout(timeout_seconds)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ---- http plumbing ----

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self._base_url}/rest/v1",
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _user_id(self) -> str:
        user_id = self._session.current_user_id()
        if not user_id:
            raise NotAuthenticatedError("No authenticated user for remote call")
        return user_id

    def _headers(self, *, representation: bool = False) -> dict[str, str]:
        token = self._session.access_token() or self._api_key
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token}",
        }
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    async def _request(
        self,
        method: str,
        entity_type: EntityType,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        representation: bool = False,
    ) -> list[dict[str, Any]]:
        table = _TABLES[EntityType(entity_type)]
        client = self._get_client()
        try:
            response = await client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=self._headers(representation=representation),
            )
        except httpx.TimeoutException as e:
            raise RemoteError(f"{method} {table} timed out", code="TIMEOUT") from e
        except httpx.TransportError as e:
            raise RemoteError(f"{method} {table} failed: {e}", code="NETWORK_ERROR") from e

        if response.is_error:
            err = _error_from_response(response)
            logger.debug("Remote %s %s -> %s", method, table, err)
            raise err

        if not response.content:
            return []
        data = response.json()
        if isinstance(data, list):
            return [r for r in data if isinstance(r, dict)]
        return [data] if isinstance(data, dict) else []

    @staticmethod
    def _single(rows: list[dict[str, Any]], what: str) -> dict[str, Any]:
        if not rows:
            raise RemoteError(f"{what}: no matching row", status=404, code="PGRST116")
        return rows[0]

    # ---- RemoteBackend ----

    async def add(self, entity_type: EntityType, row: dict[str, Any]) -> dict[str, Any]:
        user_id = self._user_id()
        rows = await self._request(
            "POST",
            entity_type,
            json={**row, "user_id": user_id},
            representation=True,
        )
        return self._single(rows, f"add {entity_type} {row.get('id')}")

    async def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        fields: dict[str, Any],
    ) -> dict[str, Any]:
        user_id = self._user_id()
        body = {k: v for k, v in fields.items() if k not in ("id", "user_id")}
        rows = await self._request(
            "PATCH",
            entity_type,
            params={"id": f"eq.{entity_id}", "user_id": f"eq.{user_id}"},
            json=body,
            representation=True,
        )
        return self._single(rows, f"update {entity_type} {entity_id}")

    async def delete_task(self, task_id: str, *, permanent: bool = False) -> dict[str, Any]:
        state = DeleteState.TOMBSTONED if permanent else DeleteState.SOFT_DELETED
        return await self.update(EntityType.TASK, task_id, {"deleted": int(state)})

    async def delete_task_list(self, list_id: str) -> dict[str, Any]:
        """Tombstone every task of the list, then the list itself."""
        user_id = self._user_id()
        tomb = int(DeleteState.TOMBSTONED)
        await self._request(
            "PATCH",
            EntityType.TASK,
            params={"list_id": f"eq.{list_id}", "user_id": f"eq.{user_id}"},
            json={"deleted": tomb},
        )
        return await self.update(
            EntityType.TASK_LIST, list_id, {"deleted": tomb, "is_active": False}
        )

    async def fetch_updated(
        self,
        entity_type: EntityType,
        owner_id: str,
        since_iso: str,
    ) -> list[dict[str, Any]]:
        return await self._request(
            "GET",
            entity_type,
            params={
                "select": "*",
                "user_id": f"eq.{owner_id}",
                "updated_at": f"gt.{since_iso}",
                "order": "updated_at.asc",
            },
        )

    async def exists(self, entity_type: EntityType, entity_id: str) -> bool:
        user_id = self._user_id()
        rows = await self._request(
            "GET",
            entity_type,
            params={"select": "id", "id": f"eq.{entity_id}", "user_id": f"eq.{user_id}"},
        )
        return bool(rows)

    async def ping(self) -> bool:
        """True when the REST endpoint answers at all (any status below 500)."""
        client = self._get_client()
        try:
            response = await client.get("/", headers={"apikey": self._api_key})
        except httpx.HTTPError as e:
            logger.debug("Remote ping failed: %s", e)
            return False
        return response.status_code < 500
