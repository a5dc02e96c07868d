"""SQLite plugin store, one database file per plugin."""

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from parley.exceptions import StorageError

logger = structlog.get_logger()

_CREATE_KV_TABLE = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
)
"""


class SqlitePluginStore:
    """Key/value table plus raw SQL access for plugins that want their own schema."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> str:
        return self._db_path

    async def setup(self) -> None:
        try:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.execute("PRAGMA journal_mode = WAL")
            await self._db.execute(_CREATE_KV_TABLE)
            await self._db.commit()
            logger.info("sqlite_store_initialized", db_path=self._db_path)
        except Exception as e:
            logger.error(
                "sqlite_store_init_failed", db_path=self._db_path, error=str(e)
            )
            raise StorageError(f"Failed to initialize SQLite store: {e}") from e

    async def teardown(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            logger.info("sqlite_store_closed", db_path=self._db_path)

    def _conn(self) -> aiosqlite.Connection:
        if not self._db:
            raise StorageError("Store not initialized, call setup() first")
        return self._db

    async def get(self, key: str, default: Any = None) -> Any:
        cursor = await self._conn().execute("SELECT value FROM kv WHERE key = ?", (key,))
        row = await cursor.fetchone()
        if not row:
            return default
        return json.loads(row["value"])

    async def set(self, key: str, value: Any) -> None:
        try:
            encoded = json.dumps(value)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value for {key!r} is not JSON-serialisable") from e
        db = self._conn()
        await db.execute(
            "INSERT OR REPLACE INTO kv (key, value, updated_at) VALUES (?, ?, ?)",
            (key, encoded, datetime.now(UTC).isoformat()),
        )
        await db.commit()

    async def delete(self, key: str) -> bool:
        db = self._conn()
        cursor = await db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await db.commit()
        return cursor.rowcount > 0

    async def keys(self, prefix: str = "") -> list[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        cursor = await self._conn().execute(
            "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (escaped + "%",),
        )
        return [row["key"] for row in await cursor.fetchall()]

    async def execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a write statement and commit. Returns the affected row count."""
        db = self._conn()
        cursor = await db.execute(sql, tuple(params))
        await db.commit()
        return cursor.rowcount

    async def fetchall(
        self, sql: str, params: Iterable[Any] = ()
    ) -> list[dict[str, Any]]:
        cursor = await self._conn().execute(sql, tuple(params))
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]
