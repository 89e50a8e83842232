"""Single-table SQLite state store via aiosqlite."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite

_SCHEMA_SQL = "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value TEXT NOT NULL)"


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqliteStateStore:
    """Key-value store backed by a ``kv`` table; values are JSON text.

    The connection is opened lazily on first use.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def _connection(self) -> aiosqlite.Connection:
        if self._db is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(str(self._db_path))
            await db.execute(_SCHEMA_SQL)
            await db.commit()
            self._db = db
        return self._db

    async def get(self, key: str) -> Any | None:
        db = await self._connection()
        async with db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cursor:
            row = await cursor.fetchone()
        if row is None or not row[0]:
            return None
        return json.loads(row[0])

    async def set(self, key: str, value: Any) -> None:
        db = await self._connection()
        await db.execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (key, json.dumps(value)),
        )
        await db.commit()

    async def delete(self, key: str) -> None:
        db = await self._connection()
        await db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await db.commit()

    async def keys(self, prefix: str) -> list[str]:
        db = await self._connection()
        async with db.execute(
            "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
            (f"{_escape_like(prefix)}%",),
        ) as cursor:
            rows = await cursor.fetchall()
        # LIKE is case-insensitive for ASCII
        return [str(row[0]) for row in rows if str(row[0]).startswith(prefix)]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
