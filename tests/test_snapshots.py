from __future__ import annotations

import sqlite3
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlmodel import Session

from fit_check.orchestrator.models import PipelineStage, RunInput, UserAnswer
from fit_check.orchestrator.state import RunState, create_initial_state, merge_answers
from fit_check.storage.common import utc_now
from fit_check.storage.snapshots import InMemorySnapshotStore, SqliteSnapshotStore
from fit_check.storage.sqlmodel_models import RunSnapshot

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Run Snapshots"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _state(stage: PipelineStage = PipelineStage.SCREENING) -> RunState:
    state = create_initial_state(RunInput(problem="Tag product photos by category"), started_at=1)
    merge_answers(state, [UserAnswer("problem-scope", "Photos in, tags out", timestamp=2)])
    state.current_stage = stage
    return state


def _sqlite_store(tmp_path: Path) -> SqliteSnapshotStore:
    store = SqliteSnapshotStore(tmp_path / "snapshots.db")
    store.init_schema()
    return store


@pytest.mark.asyncio
async def test_memory_store_round_trip_returns_copies() -> None:
    store = InMemorySnapshotStore()
    state = _state()

    await store.save("run-1", state)
    state.answers.clear()
    loaded = await store.load("run-1")

    assert loaded is not None
    assert list(loaded.answers) == ["problem-scope"]
    assert loaded is not await store.load("run-1")


@pytest.mark.asyncio
async def test_memory_store_expires_snapshots() -> None:
    clock = _Clock()
    store = InMemorySnapshotStore(default_ttl_seconds=60, clock=clock)
    await store.save("run-1", _state())
    await store.save("run-2", _state(), ttl_seconds=600)

    clock.now += 61

    assert await store.load("run-1") is None
    assert not await store.exists("run-1")
    assert await store.exists("run-2")
    assert len(store) == 1


@pytest.mark.asyncio
async def test_memory_store_delete_ignores_missing() -> None:
    store = InMemorySnapshotStore()
    await store.delete("missing")
    assert await store.load("missing") is None


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    store.close()

    with sqlite3.connect(tmp_path / "snapshots.db") as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'run_snapshots'",
        ).fetchall()

    assert version == ("20261017_0001",)
    assert tables == [("run_snapshots",)]


@pytest.mark.asyncio
async def test_sqlite_store_round_trip_and_overwrite(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    try:
        await store.save("run-1", _state(), ttl_seconds=3_600)
        await store.save("run-1", _state(PipelineStage.DIMENSIONS), ttl_seconds=3_600)

        loaded = await store.load("run-1")
        rows = store.list_runs()
    finally:
        store.close()

    assert loaded is not None
    assert loaded.current_stage == PipelineStage.DIMENSIONS
    assert loaded.answers["problem-scope"].answer == "Photos in, tags out"
    assert [(row.run_id, row.stage, row.status) for row in rows] == [
        ("run-1", "dimensions", "suspended"),
    ]


@pytest.mark.asyncio
async def test_sqlite_store_delete_and_exists(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    try:
        await store.save("run-1", _state())
        assert await store.exists("run-1")

        await store.delete("run-1")
        await store.delete("run-1")

        assert not await store.exists("run-1")
        assert await store.load("run-1") is None
    finally:
        store.close()


def test_sqlite_store_hides_and_purges_expired_rows(tmp_path: Path) -> None:
    store = _sqlite_store(tmp_path)
    try:
        store.save_sync("live", _state(), ttl_seconds=3_600)
        store.save_sync("stale", _state(), ttl_seconds=3_600)
        with Session(store._engine) as session:
            row = session.get(RunSnapshot, "stale")
            row.expires_at = utc_now() - timedelta(seconds=1)
            session.add(row)
            session.commit()

        assert [row.run_id for row in store.list_runs()] == ["live"]
        assert not store.exists_sync("stale")
        assert store.purge_expired() == 1
        assert store.load_sync("stale") is None
        assert store.exists_sync("live")
    finally:
        store.close()
