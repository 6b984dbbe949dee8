from __future__ import annotations

import sqlite3

import pytest

from itodo_sync.core.clock import ManualClock
from itodo_sync.core.errors import EntityNotFoundError
from itodo_sync.core.network import NetworkMonitor
from itodo_sync.core.session import SessionState
from itodo_sync.storage.models import DeleteState, EntityType, Operation, QueueItem, QueueStatus, SyncAction
from itodo_sync.storage.queue_store import OperationQueue
from itodo_sync.sync.engine import SyncEngine

USER = "user-1"


@pytest.fixture()
def signed_in(engine: SyncEngine, session: SessionState, network: NetworkMonitor) -> SyncEngine:
    session.sign_in(USER)
    network.set_online(False)
    return engine


def _pending(engine: SyncEngine) -> list[tuple[SyncAction, str]]:
    return [(i.action, i.entity_id) for i in engine.queue.list_by_status(QueueStatus.PENDING)]


# ---- every local write is paired with a queue item ----


def test_each_signed_in_mutation_enqueues_one_item(signed_in: SyncEngine, clock: ManualClock) -> None:
    work = signed_in.add_task_list("Work")
    task = signed_in.add_task("Review PR", list_id=work.id, quadrant=2, estimate="30m")
    clock.advance(10)
    signed_in.update_task(task.id, completed=1)
    signed_in.delete_task(task.id)
    signed_in.restore_task(task.id)
    signed_in.update_task_list(work.id, name="Work stuff")

    assert _pending(signed_in) == [
        (SyncAction.ADD, work.id),
        (SyncAction.ADD, task.id),
        (SyncAction.UPDATE, task.id),
        (SyncAction.DELETE, task.id),
        (SyncAction.UPDATE, task.id),
        (SyncAction.UPDATE, work.id),
    ]

    update = signed_in.queue.list_by_status(QueueStatus.PENDING)[2]
    stored = signed_in.store.get(EntityType.TASK, task.id)
    assert stored is not None
    assert update.payload["completed"] == 1
    assert update.payload["updated_at"] == clock.now_ms()


def test_signed_out_mutations_are_local_only(engine: SyncEngine) -> None:
    work = engine.add_task_list("Work")
    task = engine.add_task("x", list_id=work.id)
    engine.update_task(task.id, text="y")

    assert engine.queue.stats().total == 0
    stored = engine.store.get(EntityType.TASK, task.id)
    assert stored is not None and stored.owner_id is None and stored.text == "y"


def test_failed_write_enqueues_nothing(signed_in: SyncEngine) -> None:
    with pytest.raises(EntityNotFoundError):
        signed_in.update_task("missing", text="x")
    with pytest.raises(ValueError):
        signed_in.update_task_list("missing-too", is_active=1)
    assert signed_in.queue.stats().total == 0


def test_enqueue_failure_rolls_back_the_local_insert(
    signed_in: SyncEngine, monkeypatch: pytest.MonkeyPatch
) -> None:
    def broken_insert(self: OperationQueue, conn: sqlite3.Connection, op: Operation, now: int) -> QueueItem:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(OperationQueue, "_insert", broken_insert)

    with pytest.raises(sqlite3.OperationalError):
        signed_in.add_task_list("Work")

    assert signed_in.get_task_lists() == []
    assert signed_in.queue.stats().total == 0


def test_partial_batch_failure_rolls_back_the_active_list_switch(
    signed_in: SyncEngine, monkeypatch: pytest.MonkeyPatch
) -> None:
    work = signed_in.add_task_list("Work")
    home = signed_in.add_task_list("Home")
    before = signed_in.queue.stats().total

    original_insert = OperationQueue._insert
    inserted: list[str] = []

    def flaky_insert(self: OperationQueue, conn: sqlite3.Connection, op: Operation, now: int) -> QueueItem:
        inserted.append(op.entity_id)
        if len(inserted) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        return original_insert(self, conn, op, now)

    monkeypatch.setattr(OperationQueue, "_insert", flaky_insert)

    with pytest.raises(sqlite3.OperationalError):
        signed_in.set_active_task_list(home.id)

    # The deactivation was written before the activation failed; neither survives.
    assert inserted == [work.id, home.id]
    assert signed_in.queue.stats().total == before
    active = signed_in.get_active_task_list()
    assert active is not None and active.id == work.id
    stored_home = signed_in.store.get(EntityType.TASK_LIST, home.id)
    assert stored_home is not None and stored_home.is_active == 0


def test_update_without_changes_returns_current_entity(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    before = signed_in.queue.stats().total
    assert signed_in.update_task_list(work.id) == signed_in.store.get(EntityType.TASK_LIST, work.id)
    assert signed_in.queue.stats().total == before


# ---- tasks ----


def test_add_task_defaults_to_active_list_and_appends(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    a = signed_in.add_task("a", quadrant=3)
    b = signed_in.add_task("b", quadrant=3)
    c = signed_in.add_task("c", quadrant=1)

    assert a.list_id == b.list_id == work.id
    assert (a.sort_order, b.sort_order, c.sort_order) == (0, 1, 0)
    assert a.owner_id == USER


def test_add_task_validation(engine: SyncEngine) -> None:
    with pytest.raises(ValueError, match="No active task list"):
        engine.add_task("orphan")
    work = engine.add_task_list("Work")
    with pytest.raises(ValueError, match="quadrant"):
        engine.add_task("bad", list_id=work.id, quadrant=5)
    with pytest.raises(EntityNotFoundError):
        engine.add_task("nowhere", list_id="missing")


def test_soft_delete_restore_and_permanent_delete(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    task = signed_in.add_task("x")

    signed_in.delete_task(task.id)
    assert [t.id for t in signed_in.get_deleted_tasks()] == [task.id]
    assert signed_in.get_tasks(work.id, include_trashed=False) == []
    assert [t.id for t in signed_in.get_tasks(work.id)] == [task.id]

    restored = signed_in.restore_task(task.id)
    assert restored.deleted == DeleteState.ACTIVE
    with pytest.raises(ValueError):
        signed_in.restore_task(task.id)

    signed_in.delete_task(task.id, permanent=True)
    assert signed_in.get_tasks(work.id) == []
    last = signed_in.queue.list_by_status(QueueStatus.PENDING)[-1]
    assert last.action == SyncAction.DELETE
    assert last.payload["deleted"] == DeleteState.TOMBSTONED


def test_move_and_reorder(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    a = signed_in.add_task("a")
    b = signed_in.add_task("b")
    c = signed_in.add_task("c")

    moved = signed_in.move_task(a.id, 4, 2)
    assert (moved.quadrant, moved.sort_order) == (4, 2)
    with pytest.raises(ValueError):
        signed_in.move_task(a.id, 0)

    before = signed_in.queue.stats().pending
    result = signed_in.reorder_tasks(work.id, 1, [c.id, b.id])
    assert [(t.id, t.sort_order) for t in result] == [(c.id, 0), (b.id, 1)]
    assert signed_in.queue.stats().pending == before + 2
    assert [t.id for t in signed_in.get_tasks(work.id) if t.quadrant == 1] == [c.id, b.id]


def test_reorder_with_foreign_task_changes_nothing(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    other = signed_in.add_task_list("Other")
    a = signed_in.add_task("a", list_id=work.id)
    stranger = signed_in.add_task("s", list_id=other.id)
    before = signed_in.queue.stats().pending

    with pytest.raises(EntityNotFoundError):
        signed_in.reorder_tasks(work.id, 1, [a.id, stranger.id])

    assert signed_in.queue.stats().pending == before
    stored = signed_in.store.get(EntityType.TASK, a.id)
    assert stored is not None and stored.sort_order == a.sort_order


# ---- task lists ----


def test_first_list_becomes_active_and_later_ones_do_not(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    home = signed_in.add_task_list("Home", layout_mode="TWO", show_eta=False)

    assert work.is_active == 1
    assert home.is_active == 0
    assert (home.layout_mode, home.show_eta) == ("TWO", False)
    active = signed_in.get_active_task_list()
    assert active is not None and active.id == work.id


def test_set_active_queues_deactivation_before_activation(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    home = signed_in.add_task_list("Home")
    queued = len(_pending(signed_in))

    signed_in.set_active_task_list(home.id)

    items = signed_in.queue.list_by_status(QueueStatus.PENDING)[queued:]
    assert [(i.entity_id, i.payload["is_active"]) for i in items] == [(work.id, 0), (home.id, 1)]
    assert [lst.id for lst in signed_in.get_task_lists() if lst.is_active] == [home.id]

    # Activating the already-active list is a no-op.
    signed_in.set_active_task_list(home.id)
    assert len(_pending(signed_in)) == queued + 2


def test_update_task_list_refuses_is_active(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    with pytest.raises(ValueError, match="set_active_task_list"):
        signed_in.update_task_list(work.id, is_active=0)


def test_delete_task_list_tombstones_list_and_tasks(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    task = signed_in.add_task("x")

    signed_in.delete_task_list(work.id)

    assert signed_in.get_task_lists() == []
    assert signed_in.get_active_task_list() is None
    stored = signed_in.store.get(EntityType.TASK, task.id)
    assert stored is not None and stored.deleted == DeleteState.TOMBSTONED
    last = signed_in.queue.list_by_status(QueueStatus.PENDING)[-1]
    assert (last.action, last.entity_type, last.entity_id) == (SyncAction.DELETE, EntityType.TASK_LIST, work.id)
    with pytest.raises(EntityNotFoundError):
        signed_in.set_active_task_list(work.id)


# ---- queue management ----


def test_queue_management_helpers(signed_in: SyncEngine) -> None:
    work = signed_in.add_task_list("Work")
    signed_in.add_task("x")
    items = signed_in.queue.list_by_status(QueueStatus.PENDING)
    signed_in.queue.set_status(items[0].id, QueueStatus.FAILED, error="boom")
    signed_in.queue.set_status(items[1].id, QueueStatus.COMPLETED)

    status = signed_in.get_sync_status()
    assert [i.entity_id for i in status.failed] == [work.id]
    assert len(status.completed) == 1
    assert status.pending == [] and status.processing == []

    assert signed_in.retry_all_failed() == 1
    assert signed_in.queue_stats().pending == 1
    assert signed_in.retry_failed_item(items[0].id) is None
    assert signed_in.clear_completed() == 1
    assert signed_in.delete_queue_item(items[0].id) is True
    assert signed_in.queue_stats().total == 0
