# src/itodo_sync/sync/engine.py

from __future__ import annotations

"""
SyncEngine: the API a UI / session layer embeds.

Every mutation:
- writes the local store,
- enqueues the matching queue item(s) in the same transaction (only when a user
  is signed in; ownerless data is claimed and queued at the next login),
- then requests a background drain.

Reads go straight to the local store.
"""

import logging
import uuid
from typing import Any, cast

from ..core.clock import Clock
from ..core.errors import EntityNotFoundError
from ..core.network import NetworkMonitor
from ..core.ports import NetworkSignal, RemoteBackend, SessionProvider
from ..core.session import SessionState
from ..storage.database import SyncDatabase
from ..storage.local_store import LocalStore
from ..storage.models import (
    DEFAULT_LAYOUT_MODE,
    DeleteState,
    EntityType,
    Operation,
    QueueItem,
    QueueStats,
    QueueStatus,
    SyncAction,
    SyncStatus,
    Task,
    TaskList,
)
from ..storage.queue_store import OperationQueue
from ..storage.watermarks import WatermarkStore
from .coordinator import SyncCoordinator
from .executor import DEFAULT_MAX_RETRIES, DrainReport, SyncExecutor
from .merge import MergeEngine, PullReport

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return str(uuid.uuid4())


class SyncEngine:
    def __init__(
        self,
        db: SyncDatabase,
        remote: RemoteBackend,
        *,
        session: SessionProvider | None = None,
        network: NetworkSignal | None = None,
        clock: Clock | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        item_delay_seconds: float = 0.0,
        call_timeout_seconds: float | None = 30.0,
        retry_backoff_seconds: float = 5.0,
    ) -> None:
        self._db = db
        self._remote = remote
        self._network = network or NetworkMonitor(online=True)
        self._clock = clock or Clock()

        self._store = LocalStore(db, self._clock)
        self._queue = OperationQueue(db, self._clock)
        self._watermarks = WatermarkStore(db)

        self._executor_opts: dict[str, Any] = {
            "max_retries": max_retries,
            "item_delay_seconds": item_delay_seconds,
            "call_timeout_seconds": call_timeout_seconds,
        }
        self._retry_backoff_seconds = retry_backoff_seconds
        self._initialized = False
        self._wire(session or SessionState())

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        remote: RemoteBackend,
        *,
        session: SessionProvider | None = None,
        network: NetworkSignal | None = None,
        clock: Clock | None = None,
    ) -> SyncEngine:
        return cls(
            SyncDatabase(settings.db_path),
            remote,
            session=session,
            network=network,
            clock=clock,
            max_retries=int(settings.max_retries),
            item_delay_seconds=float(settings.drain_item_delay_seconds),
            call_timeout_seconds=float(settings.remote_call_timeout_seconds),
            retry_backoff_seconds=float(settings.retry_backoff_seconds),
        )

    def _wire(self, session: SessionProvider) -> None:
        self._session = session
        self._executor = SyncExecutor(
            self._queue, self._remote, session, store=self._store, **self._executor_opts
        )
        self._merge = MergeEngine(
            self._db, self._store, self._queue, self._remote, self._watermarks, self._clock
        )
        self._coordinator = SyncCoordinator(
            self._db,
            self._store,
            self._queue,
            self._executor,
            self._merge,
            session,
            self._network,
            retry_backoff_seconds=self._retry_backoff_seconds,
        )

    # ---- components (read-only access for the CLI and tests) ----

    @property
    def store(self) -> LocalStore:
        return self._store

    @property
    def queue(self) -> OperationQueue:
        return self._queue

    @property
    def session(self) -> SessionProvider:
        return self._session

    @property
    def network(self) -> NetworkSignal:
        return self._network

    @property
    def coordinator(self) -> SyncCoordinator:
        return self._coordinator

    @property
    def executor(self) -> SyncExecutor:
        return self._executor

    # ---- lifecycle ----

    def initialize(self, session_provider: SessionProvider | None = None) -> None:
        """Wire session and network triggers. Idempotent."""
        if self._initialized:
            return
        if session_provider is not None and session_provider is not self._session:
            self._wire(session_provider)
        self._initialized = True
        self._coordinator.start()

    async def close(self) -> None:
        await self._coordinator.stop()
        self._db.close()

    async def wait_idle(self) -> None:
        await self._coordinator.wait_idle()

    async def drain(self) -> DrainReport | None:
        return await self._coordinator.drain()

    async def pull(self) -> PullReport | None:
        return await self._coordinator.pull()

    def _owner(self) -> str | None:
        return self._session.current_user_id()

    def _after_write(self, enqueued: bool) -> None:
        if enqueued:
            self._coordinator.request_drain()

    # ---- reads ----

    def get_tasks(self, list_id: str | None = None, *, include_trashed: bool = True) -> list[Task]:
        tasks = [t for t in self._store.list_active(EntityType.TASK, list_id=list_id) if isinstance(t, Task)]
        if not include_trashed:
            tasks = [t for t in tasks if t.deleted == DeleteState.ACTIVE]
        return tasks

    def get_task_lists(self) -> list[TaskList]:
        return [e for e in self._store.list_active(EntityType.TASK_LIST) if isinstance(e, TaskList)]

    def get_active_task_list(self) -> TaskList | None:
        return self._store.get_active_task_list()

    def get_deleted_tasks(self, list_id: str | None = None) -> list[Task]:
        return self._store.list_deleted_tasks(list_id)

    def _require_task(self, task_id: str) -> Task:
        task = self._store.get(EntityType.TASK, task_id)
        if not isinstance(task, Task):
            raise EntityNotFoundError(str(EntityType.TASK), task_id)
        return task

    def _require_list(self, list_id: str) -> TaskList:
        task_list = self._store.get(EntityType.TASK_LIST, list_id)
        if not isinstance(task_list, TaskList) or task_list.deleted == DeleteState.TOMBSTONED:
            raise EntityNotFoundError(str(EntityType.TASK_LIST), list_id)
        return task_list

    # ---- task mutations ----

    def add_task(
        self,
        text: str,
        *,
        list_id: str | None = None,
        quadrant: int = 1,
        estimate: str = "",
        sort_order: int | None = None,
    ) -> Task:
        if list_id is None:
            active = self._store.get_active_task_list()
            if active is None:
                raise ValueError("No active task list; pass list_id")
            list_id = active.id
        self._require_list(list_id)
        if not 1 <= int(quadrant) <= 4:
            raise ValueError(f"quadrant must be 1..4, got {quadrant}")

        if sort_order is None:
            siblings = [t for t in self.get_tasks(list_id, include_trashed=False) if t.quadrant == int(quadrant)]
            sort_order = max((t.sort_order for t in siblings), default=-1) + 1

        owner = self._owner()
        draft = Task(
            id=_new_id(),
            text=text,
            list_id=list_id,
            quadrant=int(quadrant),
            estimate=estimate or "",
            sort_order=int(sort_order),
            owner_id=owner,
        )
        with self._db.transaction() as conn:
            task = self._store.insert(EntityType.TASK, draft, conn=conn)
            if owner:
                self._queue.enqueue(Operation(SyncAction.ADD, EntityType.TASK, task.id, task.to_dict()), conn=conn)

        self._after_write(bool(owner))
        return cast(Task, task)

    def update_task(self, task_id: str, **changes: Any) -> Task:
        return self._update(EntityType.TASK, task_id, changes, SyncAction.UPDATE)

    def delete_task(self, task_id: str, permanent: bool = False) -> Task:
        state = DeleteState.TOMBSTONED if permanent else DeleteState.SOFT_DELETED
        return self._update(EntityType.TASK, task_id, {"deleted": int(state)}, SyncAction.DELETE)

    def restore_task(self, task_id: str) -> Task:
        task = self._require_task(task_id)
        if task.deleted != DeleteState.SOFT_DELETED:
            raise ValueError(f"Task {task_id} is not in the trash")
        return self._update(EntityType.TASK, task_id, {"deleted": int(DeleteState.ACTIVE)}, SyncAction.UPDATE)

    def move_task(self, task_id: str, quadrant: int, sort_order: int = 0) -> Task:
        if not 1 <= int(quadrant) <= 4:
            raise ValueError(f"quadrant must be 1..4, got {quadrant}")
        return self.update_task(task_id, quadrant=int(quadrant), sort_order=int(sort_order))

    def reorder_tasks(self, list_id: str, quadrant: int, ordered_ids: list[str]) -> list[Task]:
        """Re-sequence sort_order 0..n-1; all sibling updates are queued as one batch."""
        owner = self._owner()
        result: list[Task] = []
        with self._db.transaction() as conn:
            ops: list[Operation] = []
            for position, task_id in enumerate(ordered_ids):
                current = self._store.get(EntityType.TASK, task_id, conn=conn)
                if not isinstance(current, Task) or current.list_id != list_id:
                    raise EntityNotFoundError(str(EntityType.TASK), task_id)
                changes = {"sort_order": position, "quadrant": int(quadrant)}
                task = cast(Task, self._store.update(EntityType.TASK, task_id, changes, conn=conn))
                result.append(task)
                ops.append(
                    Operation(
                        SyncAction.UPDATE,
                        EntityType.TASK,
                        task_id,
                        {**changes, "updated_at": task.updated_at},
                    )
                )
            if owner:
                self._queue.enqueue_batch(ops, conn=conn)

        self._after_write(bool(owner) and bool(result))
        return result

    # ---- task list mutations ----

    def add_task_list(
        self,
        name: str,
        *,
        layout_mode: str = DEFAULT_LAYOUT_MODE,
        show_eta: bool = True,
    ) -> TaskList:
        """Create a list; it becomes active when no other list is."""
        owner = self._owner()
        with self._db.transaction() as conn:
            make_active = self._store.get_active_task_list(conn=conn) is None
            draft = TaskList(
                id=_new_id(),
                name=name,
                is_active=1 if make_active else 0,
                layout_mode=layout_mode or DEFAULT_LAYOUT_MODE,
                show_eta=bool(show_eta),
                owner_id=owner,
            )
            task_list = self._store.insert(EntityType.TASK_LIST, draft, conn=conn)
            if owner:
                self._queue.enqueue(
                    Operation(SyncAction.ADD, EntityType.TASK_LIST, task_list.id, task_list.to_dict()),
                    conn=conn,
                )

        self._after_write(bool(owner))
        return cast(TaskList, task_list)

    def update_task_list(self, list_id: str, **changes: Any) -> TaskList:
        if "is_active" in changes:
            raise ValueError("Use set_active_task_list() to change the active list")
        self._require_list(list_id)
        return cast(TaskList, self._update(EntityType.TASK_LIST, list_id, changes, SyncAction.UPDATE))

    def set_active_task_list(self, list_id: str) -> TaskList:
        """
        Make list_id the only active list.

        Queues "deactivate old" items before "activate new", as one batch.
        """
        owner = self._owner()
        with self._db.transaction() as conn:
            target = self._store.get(EntityType.TASK_LIST, list_id, conn=conn)
            if not isinstance(target, TaskList) or target.deleted == DeleteState.TOMBSTONED:
                raise EntityNotFoundError(str(EntityType.TASK_LIST), list_id)

            previously_active = [
                e for e in self._store.list_active(EntityType.TASK_LIST, conn=conn)
                if isinstance(e, TaskList) and e.is_active and e.id != list_id
            ]
            if target.is_active and not previously_active:
                return target

            activated = self._store.set_active_task_list(list_id, conn=conn)

            if owner:
                ops: list[Operation] = []
                for old in previously_active:
                    refreshed = self._store.get(EntityType.TASK_LIST, old.id, conn=conn)
                    ops.append(
                        Operation(
                            SyncAction.UPDATE,
                            EntityType.TASK_LIST,
                            old.id,
                            {"is_active": 0, "updated_at": refreshed.updated_at if refreshed else activated.updated_at},
                        )
                    )
                ops.append(
                    Operation(
                        SyncAction.UPDATE,
                        EntityType.TASK_LIST,
                        list_id,
                        {"is_active": 1, "updated_at": activated.updated_at},
                    )
                )
                self._queue.enqueue_batch(ops, conn=conn)

        self._after_write(bool(owner))
        return activated

    def delete_task_list(self, list_id: str) -> TaskList:
        """Tombstone the list and its tasks (the remote side does the same for the tasks)."""
        owner = self._owner()
        with self._db.transaction() as conn:
            tombstoned = self._store.tombstone_task_list(list_id, conn=conn)
            if owner:
                self._queue.enqueue(
                    Operation(
                        SyncAction.DELETE,
                        EntityType.TASK_LIST,
                        list_id,
                        {"deleted": int(DeleteState.TOMBSTONED), "updated_at": tombstoned.updated_at},
                    ),
                    conn=conn,
                )

        self._after_write(bool(owner))
        return tombstoned

    def _update(
        self,
        entity_type: EntityType,
        entity_id: str,
        changes: dict[str, Any],
        action: SyncAction,
    ) -> Any:
        if not changes:
            current = self._store.get(entity_type, entity_id)
            if current is None:
                raise EntityNotFoundError(str(entity_type), entity_id)
            return current

        owner = self._owner()
        with self._db.transaction() as conn:
            entity = self._store.update(entity_type, entity_id, changes, conn=conn)
            if owner:
                payload = {**changes, "updated_at": entity.updated_at}
                self._queue.enqueue(Operation(action, entity_type, entity_id, payload), conn=conn)

        self._after_write(bool(owner))
        return entity

    # ---- queue inspection / recovery ----

    def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            pending=self._queue.list_by_status(QueueStatus.PENDING),
            processing=self._queue.list_by_status(QueueStatus.PROCESSING),
            failed=self._queue.list_by_status(QueueStatus.FAILED),
            completed=self._queue.list_by_status(QueueStatus.COMPLETED),
        )

    def queue_stats(self) -> QueueStats:
        return self._queue.stats()

    def retry_failed_item(self, item_id: str) -> QueueItem | None:
        item = self._queue.reset_failed(item_id)
        if item is None:
            logger.info("retry_failed_item: %s is not a failed item", item_id)
            return None
        self._coordinator.request_drain()
        return item

    def retry_all_failed(self) -> int:
        n = self._queue.reset_all_failed()
        if n:
            self._coordinator.request_drain()
        return n

    def delete_queue_item(self, item_id: str) -> bool:
        return self._queue.delete(item_id)

    def clear_completed(self) -> int:
        return self._queue.clear_by_status(QueueStatus.COMPLETED)
