# src/itodo_sync/sync/coordinator.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from ..core.ports import NetworkSignal, SessionProvider, Unsubscribe
from ..storage.database import SyncDatabase
from ..storage.local_store import LocalStore
from ..storage.models import EntityType, Operation, SyncAction
from ..storage.queue_store import OperationQueue
from .executor import DrainReport, SyncExecutor
from .merge import MergeEngine, PullReport

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """
    Wires session and network events to claim / pull / drain.

    Session start: claim ownerless local data, pull & merge, then drain.
    Network restore: drain (when authenticated).

    Background work runs as asyncio tasks; wait_idle() awaits them.
    """

    def __init__(
        self,
        db: SyncDatabase,
        store: LocalStore,
        queue: OperationQueue,
        executor: SyncExecutor,
        merge: MergeEngine,
        session: SessionProvider,
        network: NetworkSignal,
        *,
        retry_backoff_seconds: float = 5.0,
    ) -> None:
        self._db = db
        self._store = store
        self._queue = queue
        self._executor = executor
        self._merge = merge
        self._session = session
        self._network = network
        self._retry_backoff = max(0.0, float(retry_backoff_seconds))

        self._started = False
        self._unsubscribers: list[Unsubscribe] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._retry_handle: asyncio.TimerHandle | None = None

    @property
    def started(self) -> bool:
        return self._started

    def _can_sync(self) -> bool:
        return bool(self._session.current_user_id()) and self._network.is_online

    # ---- lifecycle ----

    def start(self) -> None:
        """Subscribe to session/network events. Runs at most once."""
        if self._started:
            logger.debug("Coordinator already started")
            return
        self._started = True

        self._queue.requeue_processing()

        self._unsubscribers.append(self._session.subscribe(self._on_session_change))
        self._unsubscribers.append(self._network.on_restore(self._on_network_restore))

        user_id = self._session.current_user_id()
        logger.info("Coordinator started (user=%s online=%s)", user_id, self._network.is_online)
        if user_id:
            self._spawn(self.handle_session_start(user_id), name="session-start")

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Coordinator stopped")

    async def wait_idle(self) -> None:
        """Wait until no background claim/pull/drain task is running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ---- event handlers ----

    def _on_session_change(self, user_id: str | None) -> None:
        self._executor.forget_confirmed()
        if user_id:
            self._spawn(self.handle_session_start(user_id), name="session-start")
            return
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _on_network_restore(self) -> None:
        if self._session.current_user_id():
            self.request_drain()

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; %s not scheduled", name)
            coro.close()
            return None

        task = loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background %s failed", task.get_name(), exc_info=exc)

    # ---- operations ----

    def claim_unowned(self, owner_id: str) -> int:
        """
        Give ownerless local entities to owner_id and queue their adds.

        Claimed lists are forced inactive; adds are queued lists first, then tasks.
        Everything happens in one transaction.
        """
        with self._db.transaction() as conn:
            lists = self._store.list_unowned(EntityType.TASK_LIST, conn=conn)
            tasks = self._store.list_unowned(EntityType.TASK, conn=conn)
            if not lists and not tasks:
                return 0

            self._store.assign_owner(EntityType.TASK_LIST, [e.id for e in lists], owner_id, conn=conn)
            self._store.assign_owner(EntityType.TASK, [e.id for e in tasks], owner_id, conn=conn)

            ops: list[Operation] = []
            for entity in lists:
                claimed = self._store.update(EntityType.TASK_LIST, entity.id, {"is_active": 0}, conn=conn)
                ops.append(Operation(SyncAction.ADD, EntityType.TASK_LIST, claimed.id, claimed.to_dict()))
            for entity in tasks:
                claimed = self._store.get(EntityType.TASK, entity.id, conn=conn) or entity
                ops.append(Operation(SyncAction.ADD, EntityType.TASK, claimed.id, claimed.to_dict()))

            self._queue.enqueue_batch(ops, conn=conn)

        logger.info("Claimed %d lists and %d tasks for user=%s", len(lists), len(tasks), owner_id)
        return len(ops)

    async def handle_session_start(self, owner_id: str) -> None:
        try:
            self.claim_unowned(owner_id)
        except Exception:
            logger.exception("Claim of local data failed user=%s", owner_id)
            raise

        if not self._network.is_online:
            logger.info("Offline at session start; pull and drain deferred")
            return

        try:
            await self._merge.pull(owner_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Pull failed at session start user=%s", owner_id)

        await self.drain()

    async def pull(self) -> PullReport | None:
        owner_id = self._session.current_user_id()
        if not owner_id:
            return None
        return await self._merge.pull(owner_id)

    async def drain(self) -> DrainReport | None:
        if not self._can_sync():
            logger.debug("Drain not run (authenticated=%s online=%s)",
                         bool(self._session.current_user_id()), self._network.is_online)
            return None

        report = await self._executor.drain()
        if report is not None and report.retried:
            self._schedule_retry(report.max_retry_count)
        return report

    def request_drain(self) -> None:
        """Fire-and-forget drain; dropped when offline or signed out."""
        if not self._can_sync():
            return
        self._spawn(self.drain(), name="drain")

    def _schedule_retry(self, retry_count: int) -> None:
        if self._retry_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        delay = self._retry_backoff * (2 ** max(0, retry_count - 1))
        logger.info("Follow-up drain scheduled in %.1fs", delay)

        def fire() -> None:
            self._retry_handle = None
            self.request_drain()

        self._retry_handle = loop.call_later(delay, fire)
