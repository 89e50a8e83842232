"""Single JSON document state store with atomic replace-on-write."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class FileStateStore:
    """Whole-document JSON store.

    Every operation reads the full document; every mutation writes it to
    ``<path>.tmp`` and renames it over the original. Safe against a crash
    mid-write, not against two processes writing at once.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str) -> Any | None:
        db = await self._read()
        return db.get(key)

    async def set(self, key: str, value: Any) -> None:
        db = await self._read()
        db[key] = value
        await self._write(db)

    async def delete(self, key: str) -> None:
        db = await self._read()
        db.pop(key, None)
        await self._write(db)

    async def keys(self, prefix: str) -> list[str]:
        db = await self._read()
        return [key for key in db if key.startswith(prefix)]

    async def close(self) -> None:
        return None

    async def _read(self) -> dict[str, Any]:
        return await asyncio.to_thread(self._read_sync)

    async def _write(self, db: dict[str, Any]) -> None:
        await asyncio.to_thread(self._write_sync, db)

    def _read_sync(self) -> dict[str, Any]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            logger.warning("State file %s is not valid JSON, treating as empty", self._path)
            return {}
        if isinstance(parsed, dict):
            return parsed
        return {}

    def _write_sync(self, db: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_name(f"{self._path.name}.tmp")
        tmp_path.write_text(json.dumps(db, indent=2), encoding="utf-8")
        os.replace(tmp_path, self._path)
