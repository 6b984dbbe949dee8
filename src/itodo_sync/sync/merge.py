# src/itodo_sync/sync/merge.py

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, replace
from typing import Any

from ..core.clock import Clock, compare_timestamps, to_iso
from ..core.errors import InvalidTimestampError
from ..core.ports import RemoteBackend
from ..storage.database import SyncDatabase
from ..storage.local_store import LocalStore
from ..storage.models import DeleteState, Entity, EntityType, Operation, SyncAction, TaskList
from ..storage.queue_store import OperationQueue
from ..storage.watermarks import WatermarkStore
from . import translator

logger = logging.getLogger(__name__)

# Lists first: tasks reference them.
PULL_ORDER = (EntityType.TASK_LIST, EntityType.TASK)


@dataclass(slots=True)
class PullReport:
    inserted: int = 0
    overwritten: int = 0
    kept: int = 0
    invalidated: int = 0
    invalid: int = 0
    deactivated: int = 0
    since_ms: int = 0
    pulled_at_ms: int = 0

    @property
    def applied(self) -> int:
        return self.inserted + self.overwritten


class MergeEngine:
    """
    Pull path with last-write-wins.

    For each remote row changed since the owner's watermark:
    - absent locally: import it as-is,
    - remote updated_at strictly newer: import over local, then drop the
      entity's still-pending queue items (they describe a superseded intent),
    - otherwise keep local; its pending items will push it forward.

    A list that arrives active settles the active flag so that at most one local
    list stays active (see _settle_active_list).

    The watermark moves to the moment the pull started, and only after the whole
    batch is applied. A fetch failure propagates and leaves it untouched.
    """

    def __init__(
        self,
        db: SyncDatabase,
        store: LocalStore,
        queue: OperationQueue,
        remote: RemoteBackend,
        watermarks: WatermarkStore,
        clock: Clock | None = None,
    ) -> None:
        self._db = db
        self._store = store
        self._queue = queue
        self._remote = remote
        self._watermarks = watermarks
        self._clock = clock or Clock()

    async def pull(self, owner_id: str) -> PullReport:
        if not owner_id:
            raise ValueError("owner_id is required")

        since_ms = self._watermarks.get(owner_id)
        started_ms = self._clock.now_ms()
        report = PullReport(since_ms=since_ms, pulled_at_ms=started_ms)
        since_iso = to_iso(since_ms)

        fetched: list[tuple[EntityType, list[dict[str, Any]]]] = []
        for entity_type in PULL_ORDER:
            rows = await self._remote.fetch_updated(entity_type, owner_id, since_iso)
            fetched.append((entity_type, rows))
            logger.debug("Pulled %d %s rows since %s", len(rows), entity_type, since_iso)

        for entity_type, rows in fetched:
            for row in rows:
                self._apply_row(entity_type, row, report)

        self._watermarks.set(owner_id, started_ms)

        logger.info(
            "Pull done owner=%s inserted=%d overwritten=%d kept=%d invalidated=%d",
            owner_id,
            report.inserted,
            report.overwritten,
            report.kept,
            report.invalidated,
        )
        return report

    def _apply_row(self, entity_type: EntityType, row: dict[str, Any], report: PullReport) -> None:
        try:
            remote_entity = translator.from_remote(entity_type, row)
        except (InvalidTimestampError, TypeError, ValueError) as e:
            report.invalid += 1
            logger.warning("Ignoring malformed remote %s row id=%s: %s", entity_type, row.get("id"), e)
            return

        try:
            self.apply(entity_type, remote_entity, report)
        except sqlite3.IntegrityError as e:
            report.invalid += 1
            logger.warning(
                "Ignoring remote %s row id=%s rejected by the local store: %s", entity_type, row.get("id"), e
            )

    def apply(self, entity_type: EntityType, remote_entity: Entity, report: PullReport | None = None) -> str:
        """
        Reconcile one remote entity against local state.

        Returns "inserted", "overwritten" or "kept".
        """
        report = report if report is not None else PullReport()

        with self._db.transaction() as conn:
            local = self._store.get(entity_type, remote_entity.id, conn=conn)

            if local is None:
                outcome = "inserted"
            elif compare_timestamps(remote_entity.updated_at, local.updated_at) > 0:
                outcome = "overwritten"
            else:
                report.kept += 1
                return "kept"

            dropped = 0
            if outcome == "overwritten":
                dropped = self._queue.delete_pending_for_entity(remote_entity.id, conn=conn)
            if (
                isinstance(remote_entity, TaskList)
                and remote_entity.is_active
                and remote_entity.deleted != DeleteState.TOMBSTONED
            ):
                remote_entity = self._settle_active_list(remote_entity, report, conn)
            self._store.import_entity(entity_type, remote_entity, conn=conn)

        if outcome == "inserted":
            report.inserted += 1
            return outcome

        report.overwritten += 1
        report.invalidated += dropped
        if dropped:
            logger.info(
                "Remote %s id=%s wins; dropped %d pending queue items",
                entity_type,
                remote_entity.id,
                dropped,
            )
        return outcome

    def _settle_active_list(self, incoming: TaskList, report: PullReport, conn: sqlite3.Connection) -> TaskList:
        """
        Keep at most one active list when a remote list arrives active.

        The newest activation wins. A newer local one keeps its list active; the
        incoming list is stored inactive and a deactivation is queued for it.
        Otherwise the other local lists lose their flag and their pending
        activations are withdrawn.
        """
        others = [tl for tl in self._store.list_active_task_lists(conn=conn) if tl.id != incoming.id]
        if not others:
            return incoming

        if any(compare_timestamps(tl.updated_at, incoming.updated_at) > 0 for tl in others):
            now = self._clock.now_ms()
            if incoming.owner_id:
                self._queue.enqueue(
                    Operation(
                        SyncAction.UPDATE,
                        EntityType.TASK_LIST,
                        incoming.id,
                        {"is_active": 0, "updated_at": now},
                    ),
                    conn=conn,
                )
            report.deactivated += 1
            logger.info("Remote list id=%s arrived active; a newer local activation keeps priority", incoming.id)
            return replace(incoming, is_active=0, updated_at=now)

        self._store.clear_active_flag([tl.id for tl in others], conn=conn)
        report.deactivated += len(others)
        for tl in others:
            if tl.owner_id == incoming.owner_id:
                report.invalidated += self._queue.drop_pending_activations(tl.id, conn=conn)
        logger.info(
            "Remote list id=%s is active; deactivated local lists %s",
            incoming.id,
            ", ".join(tl.id for tl in others),
        )
        return incoming
