# src/itodo_sync/storage/watermarks.py

from __future__ import annotations

import logging

from .database import SyncDatabase

logger = logging.getLogger(__name__)


class WatermarkStore:
    """Per-owner "last successful pull" timestamps (epoch ms)."""

    def __init__(self, db: SyncDatabase) -> None:
        self._db = db

    def get(self, owner_id: str) -> int:
        conn = self._db.connect()
        try:
            row = conn.execute(
                "SELECT last_pull_ms FROM sync_watermarks WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            return int(row["last_pull_ms"]) if row else 0
        finally:
            conn.close()

    def set(self, owner_id: str, last_pull_ms: int) -> None:
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_watermarks (owner_id, last_pull_ms) VALUES (?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET last_pull_ms = excluded.last_pull_ms
                """,
                (owner_id, int(last_pull_ms)),
            )
        logger.debug("Watermark owner=%s last_pull_ms=%s", owner_id, last_pull_ms)

    def reset(self, owner_id: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM sync_watermarks WHERE owner_id = ?", (owner_id,))
