# src/itodo_sync/storage/database.py

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path

logger = logging.getLogger(__name__)


class SyncDatabase:
    """
    One SQLite file holding every durable collection of the engine:
    tasks, task_lists, sync_queue and sync_watermarks.

    The schema is intentionally simple and migration-safe:
    - create table if missing
    - use PRAGMA table_info to detect missing columns
    - add columns with ALTER TABLE only when needed

    Connections:
    - each store method opens its own short-lived connection, unless the caller
      passes an open connection from transaction(); then the work joins that
      transaction and the caller owns commit/rollback.
    """

    def __init__(self, db_path: str | Path = "itodo.sqlite3") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()
        logger.info("SyncDatabase ready db=%s", self._db_path)

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Compatibility hook for shutdown (no persistent connections to close)."""
        return

    # ---- connections ----

    def connect(self) -> sqlite3.Connection:
        # isolation_level=None: we issue BEGIN/COMMIT ourselves so a whole
        # "local write + enqueue" pair is one explicit transaction.
        conn = sqlite3.connect(str(self._db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        self._configure_conn(conn)
        return conn

    @staticmethod
    def _configure_conn(conn: sqlite3.Connection) -> None:
        with contextlib.suppress(sqlite3.Error):
            conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=OFF")

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

        IMMEDIATE takes the write lock up front, so read-modify-write sequences
        inside the block cannot lose updates to another writer.
        """
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                with contextlib.suppress(sqlite3.Error):
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextlib.contextmanager
    def use(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        """Join the caller's transaction, or run in a fresh one."""
        if conn is not None:
            yield conn
            return
        with self.transaction() as own:
            yield own

    # ---- schema ----

    def _ensure_schema(self) -> None:
        conn = self.connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")

            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    text TEXT NOT NULL DEFAULT '',
                    completed INTEGER NOT NULL DEFAULT 0,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    quadrant INTEGER NOT NULL DEFAULT 1,
                    list_id TEXT NOT NULL,
                    estimate TEXT NOT NULL DEFAULT '',
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    owner_id TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS task_lists (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    is_active INTEGER NOT NULL DEFAULT 0,
                    deleted INTEGER NOT NULL DEFAULT 0,
                    layout_mode TEXT NOT NULL DEFAULT 'FOUR',
                    show_eta INTEGER NOT NULL DEFAULT 1,
                    owner_id TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_queue (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL DEFAULT 'pending',
                    action TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL,
                    completed_at INTEGER,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS sync_watermarks (
                    owner_id TEXT PRIMARY KEY,
                    last_pull_ms INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            # Migrations (safe): add missing columns.
            def add_col(table: str, name: str, decl: str) -> None:
                cur.execute(f"PRAGMA table_info({table})")
                cols = {row["name"] for row in cur.fetchall()}
                if name in cols:
                    return
                cur.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")
                logger.info("SyncDatabase migration: added column %s.%s", table, name)

            add_col("tasks", "estimate", "TEXT NOT NULL DEFAULT ''")
            add_col("tasks", "sort_order", "INTEGER NOT NULL DEFAULT 0")
            add_col("tasks", "owner_id", "TEXT")
            add_col("task_lists", "layout_mode", "TEXT NOT NULL DEFAULT 'FOUR'")
            add_col("task_lists", "show_eta", "INTEGER NOT NULL DEFAULT 1")
            add_col("task_lists", "owner_id", "TEXT")
            add_col("sync_queue", "last_error", "TEXT")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_list ON tasks(list_id, quadrant, sort_order)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_tasks_owner ON tasks(owner_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_task_lists_owner ON task_lists(owner_id, is_active)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_queue_status ON sync_queue(status, seq)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_queue_entity ON sync_queue(entity_id, status)")

            cur.execute("COMMIT")
        except BaseException:
            with contextlib.suppress(sqlite3.Error):
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()
