"""Contract tests shared by the file and SQLite state stores."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from market_autopilot.config import StateConfig
from market_autopilot.state.factory import create_state_store
from market_autopilot.state.file_store import FileStateStore
from market_autopilot.state.sqlite_store import SqliteStateStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from market_autopilot.state.base import StateStore


def _config(driver: str, tmp_path: Path) -> StateConfig:
    return StateConfig(driver=driver, path=str(tmp_path / "nested" / f"state.{driver}"))


@pytest.fixture(params=["file", "sqlite"])
async def store(request: pytest.FixtureRequest, tmp_path: Path) -> AsyncIterator[StateStore]:
    state = create_state_store(_config(request.param, tmp_path))
    yield state
    await state.close()


@pytest.mark.unit
class TestStateStoreContract:
    """Behaviour every backend must share."""

    async def test_missing_key_is_none(self, store: StateStore) -> None:
        assert await store.get("nope") is None

    async def test_set_then_get(self, store: StateStore) -> None:
        await store.set("k", {"attempts": 1, "nested": [1, "two"]})
        assert await store.get("k") == {"attempts": 1, "nested": [1, "two"]}

    async def test_overwrite(self, store: StateStore) -> None:
        await store.set("k", "first")
        await store.set("k", "second")
        assert await store.get("k") == "second"

    async def test_delete(self, store: StateStore) -> None:
        await store.set("k", "v")
        await store.delete("k")
        assert await store.get("k") is None

    async def test_delete_missing_key_is_a_no_op(self, store: StateStore) -> None:
        await store.delete("never-set")
        assert await store.keys("") == []

    async def test_keys_by_prefix(self, store: StateStore) -> None:
        await store.set("near_market_bid_submitted:job-1", "a")
        await store.set("near_market_bid_submitted:job-2", "b")
        await store.set("near_market_settlement_cursor", "c")
        keys = await store.keys("near_market_bid_submitted:")
        assert sorted(keys) == ["near_market_bid_submitted:job-1", "near_market_bid_submitted:job-2"]

    async def test_prefix_wildcards_are_literal(self, store: StateStore) -> None:
        await store.set("a_b:1", 1)
        await store.set("axb:2", 2)
        await store.set("a%c:3", 3)
        assert await store.keys("a_b") == ["a_b:1"]
        assert await store.keys("a%") == ["a%c:3"]

    async def test_prefix_is_case_sensitive(self, store: StateStore) -> None:
        await store.set("Upper:1", 1)
        assert await store.keys("upper") == []


@pytest.mark.unit
class TestPersistence:
    @pytest.mark.parametrize("driver", ["file", "sqlite"])
    async def test_values_survive_a_new_instance(self, driver: str, tmp_path: Path) -> None:
        first = create_state_store(_config(driver, tmp_path))
        await first.set("k", {"v": 1})
        await first.close()

        second = create_state_store(_config(driver, tmp_path))
        try:
            assert await second.get("k") == {"v": 1}
        finally:
            await second.close()

    def test_factory_selects_backend(self, tmp_path: Path) -> None:
        assert isinstance(create_state_store(_config("file", tmp_path)), FileStateStore)
        assert isinstance(create_state_store(_config("sqlite", tmp_path)), SqliteStateStore)


@pytest.mark.unit
class TestFileStateStore:
    """File backend specifics."""

    async def test_creates_parent_directories(self, tmp_path: Path) -> None:
        path = tmp_path / "a" / "b" / "state.json"
        await FileStateStore(path).set("k", "v")
        assert json.loads(path.read_text()) == {"k": "v"}

    async def test_no_temp_file_left_behind(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        await FileStateStore(path).set("k", "v")
        assert not (tmp_path / "state.json.tmp").exists()

    async def test_invalid_json_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("{not json")
        store = FileStateStore(path)
        assert await store.get("k") is None
        await store.set("k", "v")
        assert json.loads(path.read_text()) == {"k": "v"}

    async def test_non_object_document_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "state.json"
        path.write_text("[1, 2, 3]")
        assert await FileStateStore(path).keys("") == []
