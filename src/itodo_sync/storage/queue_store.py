# src/itodo_sync/storage/queue_store.py

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable
from typing import Any

from ..core.clock import Clock
from .database import SyncDatabase
from .models import (
    EntityType,
    Operation,
    QueueItem,
    QueueStats,
    QueueStatus,
    SyncAction,
)

logger = logging.getLogger(__name__)

_PATCHABLE = frozenset({"status", "payload", "retry_count", "last_error", "completed_at"})


class OperationQueue:
    """
    Durable queue of local mutations waiting to reach the remote backend.

    Items are read back in creation order (seq). Writes are single statements or
    short BEGIN IMMEDIATE transactions; enqueue/enqueue_batch accept the caller's
    open connection so the local write and its queue record commit together.
    """

    def __init__(self, db: SyncDatabase, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or Clock()
        try:
            stats = self.stats()
            logger.info(
                "OperationQueue ready pending=%s failed=%s total=%s",
                stats.pending,
                stats.failed,
                stats.total,
            )
        except sqlite3.Error:
            logger.exception("OperationQueue stats failed at startup.")

    # ---- low-level helpers ----

    @staticmethod
    def _payload_to_str(payload: dict[str, Any] | None) -> str:
        # Unlike free-form metadata, a payload that cannot be stored must fail the enqueue.
        return json.dumps(payload or {}, ensure_ascii=False, sort_keys=True)

    @staticmethod
    def _str_to_payload(s: str | None) -> dict[str, Any]:
        if not s:
            return {}
        try:
            val = json.loads(s)
            return val if isinstance(val, dict) else {}
        except json.JSONDecodeError:
            logger.warning("Corrupt queue payload ignored: %r", s[:120])
            return {}

    def _row_to_item(self, row: sqlite3.Row) -> QueueItem:
        return QueueItem(
            id=str(row["id"]),
            seq=int(row["seq"]),
            status=QueueStatus.from_db(row["status"]),
            action=SyncAction(row["action"]),
            entity_type=EntityType(row["entity_type"]),
            entity_id=str(row["entity_id"]),
            payload=self._str_to_payload(row["payload"]),
            created_at=int(row["created_at"] or 0),
            completed_at=int(row["completed_at"]) if row["completed_at"] is not None else None,
            retry_count=int(row["retry_count"] or 0),
            last_error=row["last_error"],
        )

    def _query(self, sql: str, params: Iterable[Any] = ()) -> list[QueueItem]:
        conn = self._db.connect()
        try:
            return [self._row_to_item(r) for r in conn.execute(sql, tuple(params)).fetchall()]
        finally:
            conn.close()

    def _insert(self, conn: sqlite3.Connection, op: Operation, now: int) -> QueueItem:
        item_id = str(uuid.uuid4())
        cur = conn.execute(
            """
            INSERT INTO sync_queue (
                id, status, action, entity_type, entity_id, payload, created_at, retry_count
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                item_id,
                QueueStatus.PENDING.value,
                SyncAction(op.action).value,
                EntityType(op.entity_type).value,
                op.entity_id,
                self._payload_to_str(op.payload),
                now,
            ),
        )
        return QueueItem(
            id=item_id,
            seq=int(cur.lastrowid or 0),
            status=QueueStatus.PENDING,
            action=SyncAction(op.action),
            entity_type=EntityType(op.entity_type),
            entity_id=op.entity_id,
            payload=dict(op.payload),
            created_at=now,
        )

    # ---- enqueue ----

    def enqueue(self, op: Operation, *, conn: sqlite3.Connection | None = None) -> QueueItem:
        now = self._clock.now_ms()
        with self._db.use(conn) as c:
            item = self._insert(c, op, now)
        logger.debug(
            "Enqueued %s %s id=%s item=%s", item.action, item.entity_type, item.entity_id, item.id
        )
        return item

    def enqueue_batch(
        self, ops: Iterable[Operation], *, conn: sqlite3.Connection | None = None
    ) -> list[QueueItem]:
        """Enqueue several operations in one transaction: either all appear or none do."""
        op_list = list(ops)
        if not op_list:
            return []
        now = self._clock.now_ms()
        with self._db.use(conn) as c:
            items = [self._insert(c, op, now) for op in op_list]
        logger.debug("Enqueued batch of %d items", len(items))
        return items

    # ---- reads ----

    def get(self, item_id: str) -> QueueItem | None:
        items = self._query("SELECT * FROM sync_queue WHERE id = ?", (item_id,))
        return items[0] if items else None

    def list_by_status(self, status: QueueStatus) -> list[QueueItem]:
        return self._query(
            "SELECT * FROM sync_queue WHERE status = ? ORDER BY seq ASC",
            (QueueStatus(status).value,),
        )

    def list_pending_for_entity(self, entity_id: str) -> list[QueueItem]:
        return self._query(
            "SELECT * FROM sync_queue WHERE entity_id = ? AND status = ? ORDER BY seq ASC",
            (entity_id, QueueStatus.PENDING.value),
        )

    def recent(self, limit: int = 20) -> list[QueueItem]:
        """Most recent items of any status, newest first."""
        return self._query(
            "SELECT * FROM sync_queue ORDER BY seq DESC LIMIT ?", (max(1, int(limit)),)
        )

    def stats(self) -> QueueStats:
        conn = self._db.connect()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS n FROM sync_queue GROUP BY status"
            ).fetchall()
        finally:
            conn.close()
        counts = {QueueStatus.from_db(r["status"]): int(r["n"]) for r in rows}
        return QueueStats(
            pending=counts.get(QueueStatus.PENDING, 0),
            processing=counts.get(QueueStatus.PROCESSING, 0),
            failed=counts.get(QueueStatus.FAILED, 0),
            completed=counts.get(QueueStatus.COMPLETED, 0),
        )

    # ---- state transitions ----

    def try_claim(self, item_id: str) -> bool:
        """
        Claim an item for dispatch.

        Atomically transitions:
          status = pending -> status = processing

        Returns True if the row was claimed by this caller.
        """
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE sync_queue SET status = ? WHERE id = ? AND status = ?",
                (QueueStatus.PROCESSING.value, item_id, QueueStatus.PENDING.value),
            )
            return cur.rowcount == 1

    def patch(self, item_id: str, **fields: Any) -> QueueItem | None:
        """
        Single-row read-modify-write. Returns the updated item, or None when the
        item no longer exists (deleted or invalidated meanwhile).
        """
        unknown = set(fields) - _PATCHABLE
        if unknown:
            raise ValueError(f"Cannot patch queue fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get(item_id)

        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            if name == "status":
                value = QueueStatus(value).value
            elif name == "payload":
                value = self._payload_to_str(value)
            assignments.append(f"{name} = ?")
            params.append(value)

        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                return None
            conn.execute(
                f"UPDATE sync_queue SET {', '.join(assignments)} WHERE id = ?",
                (*params, item_id),
            )
            updated = conn.execute("SELECT * FROM sync_queue WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_item(updated)

    def set_status(
        self, item_id: str, status: QueueStatus, error: str | None = None
    ) -> QueueItem | None:
        status = QueueStatus(status)
        fields: dict[str, Any] = {"status": status}
        if status == QueueStatus.COMPLETED:
            fields["completed_at"] = self._clock.now_ms()
            fields["last_error"] = None
        elif error is not None:
            fields["last_error"] = error
        return self.patch(item_id, **fields)

    def reset_failed(self, item_id: str) -> QueueItem | None:
        """Manual retry: failed -> pending with a fresh retry budget."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE sync_queue
                SET status = ?, retry_count = 0, last_error = NULL
                WHERE id = ? AND status = ?
                """,
                (QueueStatus.PENDING.value, item_id, QueueStatus.FAILED.value),
            )
            changed = cur.rowcount == 1
        return self.get(item_id) if changed else None

    def reset_all_failed(self) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE sync_queue SET status = ?, retry_count = 0, last_error = NULL WHERE status = ?",
                (QueueStatus.PENDING.value, QueueStatus.FAILED.value),
            )
            return int(cur.rowcount)

    def requeue_processing(self) -> int:
        """Items left 'processing' by an interrupted run go back to pending."""
        with self._db.transaction() as conn:
            cur = conn.execute(
                "UPDATE sync_queue SET status = ? WHERE status = ?",
                (QueueStatus.PENDING.value, QueueStatus.PROCESSING.value),
            )
            n = int(cur.rowcount)
        if n:
            logger.warning("Requeued %d queue items left in processing", n)
        return n

    # ---- removal ----

    def delete(self, item_id: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM sync_queue WHERE id = ?", (item_id,))
            return cur.rowcount == 1

    def delete_batch(self, item_ids: Iterable[str]) -> int:
        ids = list(item_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._db.transaction() as conn:
            cur = conn.execute(f"DELETE FROM sync_queue WHERE id IN ({placeholders})", ids)
            return int(cur.rowcount)

    def delete_pending_for_entity(
        self, entity_id: str, *, conn: sqlite3.Connection | None = None
    ) -> int:
        with self._db.use(conn) as c:
            cur = c.execute(
                "DELETE FROM sync_queue WHERE entity_id = ? AND status = ?",
                (entity_id, QueueStatus.PENDING.value),
            )
            return int(cur.rowcount)

    def drop_pending_activations(
        self, entity_id: str, *, conn: sqlite3.Connection | None = None
    ) -> int:
        """
        Withdraw the "make this list active" intent from its pending items.

        A pending add is kept but queued inactive; a pending update loses its
        is_active field and is deleted when nothing but updated_at remains.
        Returns the number of items changed or deleted.
        """
        changed = 0
        with self._db.use(conn) as c:
            rows = c.execute(
                "SELECT * FROM sync_queue WHERE entity_id = ? AND entity_type = ? AND status = ?",
                (entity_id, EntityType.TASK_LIST.value, QueueStatus.PENDING.value),
            ).fetchall()
            for row in rows:
                item = self._row_to_item(row)
                if not item.payload.get("is_active"):
                    continue
                payload = dict(item.payload)
                if item.action == SyncAction.ADD:
                    payload["is_active"] = 0
                else:
                    del payload["is_active"]
                if item.action == SyncAction.UPDATE and set(payload) <= {"updated_at"}:
                    c.execute("DELETE FROM sync_queue WHERE id = ?", (item.id,))
                else:
                    c.execute(
                        "UPDATE sync_queue SET payload = ? WHERE id = ?",
                        (self._payload_to_str(payload), item.id),
                    )
                changed += 1
        return changed

    def clear_by_status(self, status: QueueStatus) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM sync_queue WHERE status = ?", (QueueStatus(status).value,)
            )
            return int(cur.rowcount)
