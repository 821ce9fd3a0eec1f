"""Task history index with SQLite storage."""

from pathlib import Path

import aiosqlite

from maxian.config import get_config
from maxian.logging import get_logger
from maxian.persistence.metadata import HistoryItem

log = get_logger(__name__)


class TaskHistoryStore:
    """Keeps one HistoryItem row per task for listing and lookup."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the history store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            config = get_config()
            self.db_path = Path(config.storage.history_db).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> None:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS task_history (
                    id TEXT PRIMARY KEY,
                    number INTEGER NOT NULL,
                    ts INTEGER NOT NULL,
                    task TEXT NOT NULL,
                    tokens_in INTEGER NOT NULL DEFAULT 0,
                    tokens_out INTEGER NOT NULL DEFAULT 0,
                    cache_writes INTEGER,
                    cache_reads INTEGER,
                    total_cost REAL NOT NULL DEFAULT 0,
                    size INTEGER NOT NULL DEFAULT 0,
                    workspace TEXT NOT NULL DEFAULT '',
                    mode TEXT
                )
            """)
            await self._db.execute(
                "CREATE INDEX IF NOT EXISTS idx_task_history_ts ON task_history(ts DESC)"
            )
            await self._db.commit()

    async def upsert(self, item: HistoryItem) -> None:
        """Insert or replace a history item."""
        await self._ensure_db()
        await self._db.execute(
            """
            INSERT OR REPLACE INTO task_history
                (id, number, ts, task, tokens_in, tokens_out, cache_writes,
                 cache_reads, total_cost, size, workspace, mode)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.number,
                item.ts,
                item.task,
                item.tokens_in,
                item.tokens_out,
                item.cache_writes,
                item.cache_reads,
                item.total_cost,
                item.size,
                item.workspace,
                item.mode,
            ),
        )
        await self._db.commit()
        log.debug("Saved history item", task_id=item.id)

    async def get(self, task_id: str) -> HistoryItem | None:
        """Get a history item by task ID."""
        await self._ensure_db()
        async with self._db.execute(
            "SELECT * FROM task_history WHERE id = ?",
            (task_id,),
        ) as cursor:
            row = await cursor.fetchone()
            columns = [c[0] for c in cursor.description]
        if not row:
            return None
        return HistoryItem.from_dict(dict(zip(columns, row)))

    async def list(self, limit: int = 20, workspace: str | None = None) -> list[HistoryItem]:
        """List history items, newest first.

        Args:
            limit: Maximum number of rows
            workspace: Only tasks from this workspace when set

        Returns:
            List of history items
        """
        await self._ensure_db()
        query = "SELECT * FROM task_history"
        params: tuple = ()
        if workspace:
            query += " WHERE workspace = ?"
            params = (workspace,)
        query += " ORDER BY ts DESC LIMIT ?"
        params = (*params, limit)

        async with self._db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            columns = [c[0] for c in cursor.description]
        return [HistoryItem.from_dict(dict(zip(columns, row))) for row in rows]

    async def next_number(self) -> int:
        """Number for the next task (1-based)."""
        await self._ensure_db()
        async with self._db.execute("SELECT MAX(number) FROM task_history") as cursor:
            row = await cursor.fetchone()
        return int(row[0] or 0) + 1

    async def delete(self, task_id: str) -> bool:
        """Delete a history item."""
        await self._ensure_db()
        cursor = await self._db.execute(
            "DELETE FROM task_history WHERE id = ?",
            (task_id,),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None


# Global history store
_store: TaskHistoryStore | None = None


def get_history_store() -> TaskHistoryStore:
    """Get the global history store."""
    global _store
    if _store is None:
        _store = TaskHistoryStore()
    return _store


def set_history_store(store: TaskHistoryStore) -> None:
    """Set the global history store."""
    global _store
    _store = store
