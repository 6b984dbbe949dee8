from __future__ import annotations

import pytest

from itodo_sync.core.clock import ManualClock
from itodo_sync.storage.database import SyncDatabase
from itodo_sync.storage.models import EntityType, Operation, QueueStatus, SyncAction
from itodo_sync.storage.queue_store import OperationQueue
from itodo_sync.storage.watermarks import WatermarkStore


def _op(entity_id: str, action: SyncAction = SyncAction.ADD, **payload: object) -> Operation:
    return Operation(action, EntityType.TASK, entity_id, dict(payload))


def test_enqueue_preserves_creation_order(queue: OperationQueue) -> None:
    for i in range(5):
        queue.enqueue(_op(f"t{i}", text=f"task {i}"))

    pending = queue.list_by_status(QueueStatus.PENDING)
    assert [i.entity_id for i in pending] == ["t0", "t1", "t2", "t3", "t4"]
    assert all(i.retry_count == 0 and i.last_error is None for i in pending)
    assert pending[0].payload == {"text": "task 0"}


def test_enqueue_batch_is_all_or_nothing(queue: OperationQueue) -> None:
    ops = [_op("t1"), _op("t2", bad=object()), _op("t3")]
    with pytest.raises(TypeError):
        queue.enqueue_batch(ops)
    assert queue.stats().total == 0

    items = queue.enqueue_batch([_op("t1"), _op("t2")])
    assert [i.entity_id for i in items] == ["t1", "t2"]
    assert queue.stats().pending == 2


def test_try_claim_succeeds_once(queue: OperationQueue) -> None:
    item = queue.enqueue(_op("t1"))

    assert queue.try_claim(item.id) is True
    assert queue.try_claim(item.id) is False
    got = queue.get(item.id)
    assert got is not None and got.status == QueueStatus.PROCESSING


def test_set_status_completed_stamps_completion(queue: OperationQueue, clock: ManualClock) -> None:
    item = queue.enqueue(_op("t1"))
    queue.patch(item.id, last_error="earlier failure")
    clock.advance(250)

    done = queue.set_status(item.id, QueueStatus.COMPLETED)

    assert done is not None
    assert done.status == QueueStatus.COMPLETED
    assert done.completed_at == clock.now_ms()
    assert done.last_error is None


def test_set_status_failed_records_error(queue: OperationQueue) -> None:
    item = queue.enqueue(_op("t1"))
    failed = queue.set_status(item.id, QueueStatus.FAILED, error="409 conflict")
    assert failed is not None
    assert failed.status == QueueStatus.FAILED
    assert failed.last_error == "409 conflict"
    assert failed.completed_at is None


def test_patch_missing_item_returns_none(queue: OperationQueue) -> None:
    assert queue.patch("nope", status=QueueStatus.PENDING) is None


def test_patch_rejects_unknown_fields(queue: OperationQueue) -> None:
    item = queue.enqueue(_op("t1"))
    with pytest.raises(ValueError):
        queue.patch(item.id, entity_id="other")


def test_reset_failed_restores_retry_budget(queue: OperationQueue) -> None:
    item = queue.enqueue(_op("t1"))
    queue.patch(item.id, status=QueueStatus.FAILED, retry_count=2, last_error="boom")

    reset = queue.reset_failed(item.id)

    assert reset is not None
    assert reset.status == QueueStatus.PENDING
    assert reset.retry_count == 0
    assert reset.last_error is None
    # Only failed items can be reset.
    assert queue.reset_failed(item.id) is None


def test_reset_all_failed(queue: OperationQueue) -> None:
    a = queue.enqueue(_op("a"))
    b = queue.enqueue(_op("b"))
    queue.enqueue(_op("c"))
    queue.set_status(a.id, QueueStatus.FAILED, error="x")
    queue.set_status(b.id, QueueStatus.FAILED, error="y")

    assert queue.reset_all_failed() == 2
    assert queue.stats().pending == 3


def test_requeue_processing_recovers_interrupted_items(queue: OperationQueue) -> None:
    item = queue.enqueue(_op("t1"))
    queue.try_claim(item.id)

    assert queue.requeue_processing() == 1
    got = queue.get(item.id)
    assert got is not None and got.status == QueueStatus.PENDING


def test_delete_pending_for_entity_leaves_other_statuses(queue: OperationQueue) -> None:
    done = queue.enqueue(_op("t1"))
    queue.set_status(done.id, QueueStatus.COMPLETED)
    queue.enqueue(_op("t1", SyncAction.UPDATE, text="a"))
    queue.enqueue(_op("t1", SyncAction.UPDATE, text="b"))
    queue.enqueue(_op("t2"))

    assert queue.delete_pending_for_entity("t1") == 2
    assert queue.list_pending_for_entity("t1") == []
    assert [i.entity_id for i in queue.list_by_status(QueueStatus.PENDING)] == ["t2"]
    assert queue.get(done.id) is not None


def test_drop_pending_activations_withdraws_only_the_active_flag(queue: OperationQueue) -> None:
    def list_op(entity_id: str, action: SyncAction, **payload: object) -> Operation:
        return Operation(action, EntityType.TASK_LIST, entity_id, dict(payload))

    add = queue.enqueue(list_op("l1", SyncAction.ADD, id="l1", name="L", is_active=1))
    flag_only = queue.enqueue(list_op("l1", SyncAction.UPDATE, is_active=1, updated_at=5))
    rename = queue.enqueue(list_op("l1", SyncAction.UPDATE, name="M", is_active=1, updated_at=6))
    off = queue.enqueue(list_op("l1", SyncAction.UPDATE, is_active=0, updated_at=7))
    other = queue.enqueue(list_op("l2", SyncAction.UPDATE, is_active=1, updated_at=8))

    assert queue.drop_pending_activations("l1") == 3

    kept_add = queue.get(add.id)
    assert kept_add is not None and kept_add.payload["is_active"] == 0
    assert queue.get(flag_only.id) is None
    renamed = queue.get(rename.id)
    assert renamed is not None and renamed.payload == {"name": "M", "updated_at": 6}
    untouched = queue.get(off.id)
    assert untouched is not None and untouched.payload == {"is_active": 0, "updated_at": 7}
    elsewhere = queue.get(other.id)
    assert elsewhere is not None and elsewhere.payload["is_active"] == 1


def test_recent_and_clear_by_status(queue: OperationQueue) -> None:
    items = [queue.enqueue(_op(f"t{i}")) for i in range(3)]
    queue.set_status(items[0].id, QueueStatus.COMPLETED)

    assert [i.entity_id for i in queue.recent(2)] == ["t2", "t1"]
    assert queue.clear_by_status(QueueStatus.COMPLETED) == 1
    assert queue.stats().completed == 0
    assert queue.delete(items[1].id) is True
    assert queue.delete(items[1].id) is False
    assert queue.delete_batch([items[2].id]) == 1
    assert queue.stats().total == 0


def test_queue_survives_reopen(tmp_path) -> None:
    path = tmp_path / "q.sqlite3"
    q1 = OperationQueue(SyncDatabase(path))
    q1.enqueue(_op("t1", text="persisted"))

    q2 = OperationQueue(SyncDatabase(path))
    pending = q2.list_by_status(QueueStatus.PENDING)
    assert [(i.entity_id, i.payload) for i in pending] == [("t1", {"text": "persisted"})]


def test_watermarks_default_to_zero_per_owner(db: SyncDatabase) -> None:
    marks = WatermarkStore(db)
    assert marks.get("u1") == 0

    marks.set("u1", 1234)
    marks.set("u1", 5678)
    assert marks.get("u1") == 5678
    assert marks.get("u2") == 0

    marks.reset("u1")
    assert marks.get("u1") == 0
