# src/itodo_sync/sync/executor.py

from __future__ import annotations

"""
Push path.

One drain pass:
- reads pending queue items in creation order,
- reorders list deactivations ahead of activations,
- skips items owned by another user than the signed-in one,
- skips task items whose list (or, for updates, the task itself) is not yet remote,
- claims each item and sends it through the remote backend port,
- marks it completed, or requeues / fails it according to the error kind.

Only one pass runs at a time per executor; overlapping requests are dropped.
"""

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from ..core.errors import classify_error
from ..core.ports import RemoteBackend, SessionProvider
from ..storage.local_store import LocalStore
from ..storage.models import (
    DeleteState,
    EntityType,
    QueueItem,
    QueueStatus,
    SyncAction,
    entity_from_dict,
)
from ..storage.queue_store import OperationQueue
from . import translator

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


@dataclass(slots=True)
class DrainReport:
    completed: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    # Highest retry_count among items sent back to pending in this pass.
    max_retry_count: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.retried + self.failed


def _is_list_activation_change(item: QueueItem, active: bool) -> bool:
    if item.entity_type != EntityType.TASK_LIST:
        return False
    if item.action not in (SyncAction.UPDATE, SyncAction.ADD):
        return False
    if "is_active" not in item.payload:
        return False
    if item.action == SyncAction.ADD and not active:
        return False
    return bool(item.payload["is_active"]) is active


def order_for_drain(items: Iterable[QueueItem]) -> list[QueueItem]:
    """
    Creation order, except that each list deactivation moves ahead of any
    activation enqueued before it (never ahead of an earlier item for the same list).
    """
    out: list[QueueItem] = []
    for item in items:
        if not _is_list_activation_change(item, active=False):
            out.append(item)
            continue

        floor = 0
        for i, prev in enumerate(out):
            if prev.entity_id == item.entity_id:
                floor = i + 1

        pos = len(out)
        for i in range(floor, len(out)):
            if _is_list_activation_change(out[i], active=True):
                pos = i
                break
        out.insert(pos, item)
    return out


class SyncExecutor:
    """
    Drains the operation queue to the remote backend.

    Constructed once per engine; the in-flight flag and the cache of lists and
    tasks confirmed remote-present are private to the instance.
    """

    def __init__(
        self,
        queue: OperationQueue,
        remote: RemoteBackend,
        session: SessionProvider,
        *,
        store: LocalStore | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        item_delay_seconds: float = 0.0,
        call_timeout_seconds: float | None = 30.0,
    ) -> None:
        self._queue = queue
        self._remote = remote
        self._session = session
        self._store = store
        self._max_retries = max(1, int(max_retries))
        self._item_delay = max(0.0, float(item_delay_seconds))
        self._call_timeout = call_timeout_seconds if call_timeout_seconds and call_timeout_seconds > 0 else None

        self._in_flight = False
        self._confirmed: dict[EntityType, set[str]] = {
            EntityType.TASK: set(),
            EntityType.TASK_LIST: set(),
        }

    @property
    def is_draining(self) -> bool:
        return self._in_flight

    def mark_confirmed(self, entity_type: EntityType, entity_id: str) -> None:
        self._confirmed[EntityType(entity_type)].add(entity_id)

    def is_confirmed(self, entity_type: EntityType, entity_id: str) -> bool:
        return entity_id in self._confirmed[EntityType(entity_type)]

    def forget_confirmed(self) -> None:
        """Drop the remote-presence cache (e.g. after the user changes)."""
        for ids in self._confirmed.values():
            ids.clear()

    async def drain(self) -> DrainReport | None:
        """
        Run one pass over the pending items.

        Returns None when a pass is already running (the request is dropped).
        """
        # Test-and-set with no await in between.
        if self._in_flight:
            logger.debug("Drain already in flight; request dropped")
            return None
        self._in_flight = True
        try:
            return await self._drain_pass()
        finally:
            self._in_flight = False

    # ---- internals ----

    async def _call(self, coro: Any) -> Any:
        if self._call_timeout is None:
            return await coro
        return await asyncio.wait_for(coro, timeout=self._call_timeout)

    async def _drain_pass(self) -> DrainReport:
        report = DrainReport()

        owner_id = self._session.current_user_id()
        if not owner_id:
            logger.debug("Drain skipped: not authenticated")
            return report

        items = order_for_drain(self._queue.list_by_status(QueueStatus.PENDING))
        if not items:
            return report

        logger.debug("Drain pass started items=%d", len(items))
        skipped_entities: set[str] = set()
        first = True

        for item in items:
            if item.entity_id in skipped_entities:
                report.skipped += 1
                continue

            item_owner = self._owner_of(item)
            if item_owner is not None and item_owner != owner_id:
                skipped_entities.add(item.entity_id)
                report.skipped += 1
                logger.debug(
                    "Skipping %s %s id=%s: queued for user=%s",
                    item.action,
                    item.entity_type,
                    item.entity_id,
                    item_owner,
                )
                continue

            if not await self._dependencies_ready(item):
                skipped_entities.add(item.entity_id)
                report.skipped += 1
                logger.debug(
                    "Skipping %s %s id=%s: dependency not remote yet",
                    item.action,
                    item.entity_type,
                    item.entity_id,
                )
                continue

            if not first and self._item_delay:
                await asyncio.sleep(self._item_delay)
            first = False

            try:
                claimed = self._queue.try_claim(item.id)
            except Exception:
                logger.exception("try_claim failed item=%s", item.id)
                skipped_entities.add(item.entity_id)
                continue
            if not claimed:
                continue

            # Re-read after the claim: retry_count/payload may have changed since the listing.
            current = self._queue.get(item.id) or item
            await self._process(current, owner_id, report, skipped_entities)

        if report.processed or report.skipped:
            logger.info(
                "Drain pass done completed=%d retried=%d failed=%d skipped=%d",
                report.completed,
                report.retried,
                report.failed,
                report.skipped,
            )
        return report

    async def _process(
        self,
        item: QueueItem,
        owner_id: str,
        report: DrainReport,
        skipped_entities: set[str],
    ) -> None:
        try:
            await self._call(self._dispatch(item, owner_id))
        except asyncio.CancelledError:
            self._queue.set_status(item.id, QueueStatus.PENDING)
            raise
        except Exception as e:
            kind = classify_error(e)
            message = str(e) or type(e).__name__
            # Later items for this entity must not overtake the failed one.
            skipped_entities.add(item.entity_id)

            if kind.retryable and item.retry_count + 1 < self._max_retries:
                retry_count = item.retry_count + 1
                self._queue.patch(
                    item.id,
                    status=QueueStatus.PENDING,
                    retry_count=retry_count,
                    last_error=message,
                )
                report.retried += 1
                report.max_retry_count = max(report.max_retry_count, retry_count)
                logger.warning(
                    "Sync %s %s id=%s failed (%s), retry %d/%d: %s",
                    item.action,
                    item.entity_type,
                    item.entity_id,
                    kind.value,
                    retry_count,
                    self._max_retries - 1,
                    message,
                )
            else:
                self._queue.set_status(item.id, QueueStatus.FAILED, error=message)
                report.failed += 1
                logger.error(
                    "Sync %s %s id=%s failed (%s), giving up: %s",
                    item.action,
                    item.entity_type,
                    item.entity_id,
                    kind.value,
                    message,
                )
            return

        self._queue.set_status(item.id, QueueStatus.COMPLETED)
        report.completed += 1
        if item.action == SyncAction.ADD:
            self.mark_confirmed(item.entity_type, item.entity_id)
        logger.debug("Sync %s %s id=%s -> completed", item.action, item.entity_type, item.entity_id)

    def _owner_of(self, item: QueueItem) -> str | None:
        owner = item.payload.get("owner_id")
        if owner:
            return str(owner)
        if self._store is None:
            return None
        entity = self._store.get(item.entity_type, item.entity_id)
        return entity.owner_id if entity is not None else None

    async def _is_remote(self, entity_type: EntityType, entity_id: str) -> bool:
        if self.is_confirmed(entity_type, entity_id):
            return True
        try:
            present = bool(await self._call(self._remote.exists(entity_type, entity_id)))
        except Exception as e:
            kind = classify_error(e)
            logger.warning("exists(%s, %s) failed (%s): %s", entity_type, entity_id, kind.value, e)
            return False
        if present:
            self.mark_confirmed(entity_type, entity_id)
        return present

    async def _dependencies_ready(self, item: QueueItem) -> bool:
        if item.entity_type != EntityType.TASK:
            return True
        list_id = item.payload.get("list_id")
        if not list_id:
            return True
        if not await self._is_remote(EntityType.TASK_LIST, str(list_id)):
            return False
        if item.action == SyncAction.UPDATE:
            return await self._is_remote(EntityType.TASK, item.entity_id)
        return True

    async def _dispatch(self, item: QueueItem, owner_id: str) -> Any:
        et = item.entity_type
        payload = dict(item.payload)

        if item.action == SyncAction.ADD:
            payload["id"] = item.entity_id
            entity = entity_from_dict(et, payload)
            return await self._remote.add(et, translator.to_remote(et, entity, owner_id))

        if item.action == SyncAction.UPDATE:
            changes = {k: v for k, v in payload.items() if k not in ("id", "owner_id", "created_at")}
            return await self._remote.update(et, item.entity_id, translator.fields_to_remote(et, changes))

        if item.action == SyncAction.DELETE:
            if et == EntityType.TASK:
                permanent = int(payload.get("deleted", DeleteState.SOFT_DELETED)) == DeleteState.TOMBSTONED
                return await self._remote.delete_task(item.entity_id, permanent=permanent)
            return await self._remote.delete_task_list(item.entity_id)

        raise ValueError(f"Unknown action: {item.action}")

