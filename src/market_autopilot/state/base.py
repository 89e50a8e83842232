"""State store contract shared by the file and SQLite backends."""

from __future__ import annotations

from typing import Any, Protocol


class StateStore(Protocol):
    """Async key-value store holding JSON-compatible values."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str) -> list[str]: ...

    async def close(self) -> None: ...
