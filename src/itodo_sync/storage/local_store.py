# src/itodo_sync/storage/local_store.py

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import fields as dc_fields
from typing import Any, cast

from ..core.clock import Clock
from ..core.errors import EntityNotFoundError
from .database import SyncDatabase
from .models import (
    ENTITY_CLASSES,
    MUTABLE_FIELDS,
    DeleteState,
    Entity,
    EntityType,
    Task,
    TaskList,
    entity_from_dict,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()

_TABLES = {
    EntityType.TASK: "tasks",
    EntityType.TASK_LIST: "task_lists",
}

_COLUMNS = {et: [f.name for f in dc_fields(cls)] for et, cls in ENTITY_CLASSES.items()}

_ORDER_BY = {
    EntityType.TASK: "quadrant ASC, sort_order ASC, created_at ASC",
    EntityType.TASK_LIST: "created_at ASC, id ASC",
}


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    return value


class LocalStore:
    """
    SQLite-backed Task / TaskList storage.

    Every insert/update stamps timestamps with the injected Clock; caller-supplied
    timestamps are ignored, except through import_entity() which the merge path
    uses to keep the remote timestamps verbatim.

    All methods are plain synchronous calls: when one returns, the write is durable
    (or part of the caller's still-open transaction when conn is given).
    """

    def __init__(self, db: SyncDatabase, clock: Clock | None = None) -> None:
        self._db = db
        self._clock = clock or Clock()

    # ---- low-level helpers ----

    @staticmethod
    def _table(entity_type: EntityType) -> str:
        return _TABLES[EntityType(entity_type)]

    @staticmethod
    def _row_to_entity(entity_type: EntityType, row: sqlite3.Row) -> Entity:
        data = {k: row[k] for k in row.keys()}
        if entity_type == EntityType.TASK_LIST:
            data["show_eta"] = bool(data.get("show_eta", 1))
        return entity_from_dict(entity_type, data)

    def _write_row(self, conn: sqlite3.Connection, entity_type: EntityType, data: Mapping[str, Any], *, replace: bool) -> None:
        cols = _COLUMNS[EntityType(entity_type)]
        placeholders = ", ".join("?" for _ in cols)
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        conn.execute(
            f"{verb} INTO {self._table(entity_type)} ({', '.join(cols)}) VALUES ({placeholders})",
            [_to_db(data.get(c)) for c in cols],
        )

    def _fetch_one(self, conn: sqlite3.Connection, entity_type: EntityType, entity_id: str) -> Entity | None:
        row = conn.execute(
            f"SELECT * FROM {self._table(entity_type)} WHERE id = ?", (entity_id,)
        ).fetchone()
        return self._row_to_entity(entity_type, row) if row else None

    def _require(self, conn: sqlite3.Connection, entity_type: EntityType, entity_id: str) -> Entity:
        entity = self._fetch_one(conn, entity_type, entity_id)
        if entity is None:
            raise EntityNotFoundError(str(entity_type), entity_id)
        return entity

    # ---- reads ----

    def get(self, entity_type: EntityType, entity_id: str, *, conn: sqlite3.Connection | None = None) -> Entity | None:
        if conn is not None:
            return self._fetch_one(conn, entity_type, entity_id)
        own = self._db.connect()
        try:
            return self._fetch_one(own, entity_type, entity_id)
        finally:
            own.close()

    def list_active(
        self,
        entity_type: EntityType,
        *,
        owner_id: str | None = _UNSET,
        list_id: str | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> list[Entity]:
        """
        Entities whose delete flag is not TOMBSTONED.

        owner_id: when given, restrict to that owner (None selects unowned rows).
        list_id:  tasks only, restrict to one list.
        """
        where = ["deleted != ?"]
        params: list[Any] = [int(DeleteState.TOMBSTONED)]

        if owner_id is not _UNSET:
            if owner_id is None:
                where.append("owner_id IS NULL")
            else:
                where.append("owner_id = ?")
                params.append(owner_id)

        if list_id is not None:
            if entity_type != EntityType.TASK:
                raise ValueError("list_id filter only applies to tasks")
            where.append("list_id = ?")
            params.append(list_id)

        sql = (
            f"SELECT * FROM {self._table(entity_type)} "
            f"WHERE {' AND '.join(where)} ORDER BY {_ORDER_BY[EntityType(entity_type)]}"
        )
        return self._select(entity_type, sql, params, conn)

    def list_unowned(self, entity_type: EntityType, *, conn: sqlite3.Connection | None = None) -> list[Entity]:
        """Live (deleted == 0) entities created before any user signed in."""
        sql = (
            f"SELECT * FROM {self._table(entity_type)} "
            f"WHERE owner_id IS NULL AND deleted = 0 ORDER BY {_ORDER_BY[EntityType(entity_type)]}"
        )
        return self._select(entity_type, sql, [], conn)

    def list_deleted_tasks(self, list_id: str | None = None) -> list[Task]:
        """Soft-deleted tasks (the trash), most recently deleted first."""
        sql = "SELECT * FROM tasks WHERE deleted = ?"
        params: list[Any] = [int(DeleteState.SOFT_DELETED)]
        if list_id is not None:
            sql += " AND list_id = ?"
            params.append(list_id)
        sql += " ORDER BY updated_at DESC"
        return [e for e in self._select(EntityType.TASK, sql, params, None) if isinstance(e, Task)]

    def get_active_task_list(self, *, conn: sqlite3.Connection | None = None) -> TaskList | None:
        lists = self.list_active_task_lists(conn=conn)
        return lists[0] if lists else None

    def list_active_task_lists(self, *, conn: sqlite3.Connection | None = None) -> list[TaskList]:
        rows = self._select(
            EntityType.TASK_LIST,
            "SELECT * FROM task_lists WHERE is_active = 1 AND deleted != ? ORDER BY updated_at DESC",
            [int(DeleteState.TOMBSTONED)],
            conn,
        )
        return [e for e in rows if isinstance(e, TaskList)]

    def count(self, entity_type: EntityType) -> int:
        conn = self._db.connect()
        try:
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {self._table(entity_type)}").fetchone()
            return int(n)
        finally:
            conn.close()

    def _select(
        self,
        entity_type: EntityType,
        sql: str,
        params: list[Any],
        conn: sqlite3.Connection | None,
    ) -> list[Entity]:
        own = conn or self._db.connect()
        try:
            return [self._row_to_entity(entity_type, r) for r in own.execute(sql, params).fetchall()]
        finally:
            if conn is None:
                own.close()

    # ---- writes ----

    def insert(
        self,
        entity_type: EntityType,
        entity: Entity | Mapping[str, Any],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> Entity:
        """Insert a new local entity; created_at/updated_at are stamped here."""
        data = entity.to_dict() if isinstance(entity, (Task, TaskList)) else dict(entity)
        if not data.get("id"):
            raise ValueError("id is required")
        stamped = self._clock.with_timestamps(data)
        result = entity_from_dict(entity_type, stamped)

        with self._db.use(conn) as c:
            self._write_row(c, entity_type, result.to_dict(), replace=False)

        logger.debug("Local insert %s id=%s", entity_type, result.id)
        return result

    def import_entity(
        self,
        entity_type: EntityType,
        entity: Entity,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> Entity:
        """Write a remote entity as-is (insert or overwrite), keeping its timestamps."""
        with self._db.use(conn) as c:
            self._write_row(c, entity_type, entity.to_dict(), replace=True)
        logger.debug("Local import %s id=%s updated_at=%s", entity_type, entity.id, entity.updated_at)
        return entity

    def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        changes: Mapping[str, Any],
        *,
        conn: sqlite3.Connection | None = None,
    ) -> Entity:
        """Merge changes into the stored entity and stamp updated_at."""
        allowed = MUTABLE_FIELDS[EntityType(entity_type)]
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Cannot update {entity_type} fields: {', '.join(sorted(unknown))}")

        with self._db.use(conn) as c:
            current = self._require(c, entity_type, entity_id)
            merged = self._clock.with_updated_timestamp({**current.to_dict(), **changes})
            result = entity_from_dict(entity_type, merged)
            self._write_row(c, entity_type, result.to_dict(), replace=True)

        return result

    def assign_owner(
        self,
        entity_type: EntityType,
        ids: Iterable[str],
        owner_id: str,
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        id_list = list(ids)
        if not id_list:
            return 0
        now = self._clock.now_ms()
        placeholders = ",".join("?" for _ in id_list)
        with self._db.use(conn) as c:
            cur = c.execute(
                f"UPDATE {self._table(entity_type)} SET owner_id = ?, updated_at = ? WHERE id IN ({placeholders})",
                (owner_id, now, *id_list),
            )
            return int(cur.rowcount)

    def set_active_task_list(self, list_id: str, *, conn: sqlite3.Connection | None = None) -> TaskList:
        """Activate one list and deactivate every other active list."""
        with self._db.use(conn) as c:
            target = self._fetch_one(c, EntityType.TASK_LIST, list_id)
            if not isinstance(target, TaskList) or target.deleted == DeleteState.TOMBSTONED:
                raise EntityNotFoundError(str(EntityType.TASK_LIST), list_id)

            now = self._clock.now_ms()
            c.execute(
                "UPDATE task_lists SET is_active = 0, updated_at = ? WHERE is_active = 1 AND id != ?",
                (now, list_id),
            )
            c.execute(
                "UPDATE task_lists SET is_active = 1, updated_at = ? WHERE id = ?",
                (now, list_id),
            )
            result = self._require(c, EntityType.TASK_LIST, list_id)

        return cast(TaskList, result)

    def clear_active_flag(self, list_ids: Iterable[str], *, conn: sqlite3.Connection | None = None) -> int:
        """
        Drop is_active on the given lists without stamping updated_at.

        The merge path uses this; the rows keep the timestamps of their remote versions.
        """
        id_list = list(list_ids)
        if not id_list:
            return 0
        placeholders = ",".join("?" for _ in id_list)
        with self._db.use(conn) as c:
            cur = c.execute(f"UPDATE task_lists SET is_active = 0 WHERE id IN ({placeholders})", id_list)
            return int(cur.rowcount)

    def tombstone_task_list(self, list_id: str, *, conn: sqlite3.Connection | None = None) -> TaskList:
        """Tombstone a list and every task in it; the list also loses its active flag."""
        with self._db.use(conn) as c:
            self._require(c, EntityType.TASK_LIST, list_id)
            now = self._clock.now_ms()
            tomb = int(DeleteState.TOMBSTONED)
            c.execute(
                "UPDATE tasks SET deleted = ?, updated_at = ? WHERE list_id = ? AND deleted != ?",
                (tomb, now, list_id, tomb),
            )
            c.execute(
                "UPDATE task_lists SET deleted = ?, is_active = 0, updated_at = ? WHERE id = ?",
                (tomb, now, list_id),
            )
            result = self._require(c, EntityType.TASK_LIST, list_id)

        return cast(TaskList, result)
