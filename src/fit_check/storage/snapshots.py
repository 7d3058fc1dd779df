"""Snapshot stores used to park suspended runs."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol

from sqlmodel import Session, col, select

from fit_check.orchestrator.state import RunState
from fit_check.storage.alembic_runner import upgrade_head
from fit_check.storage.common import as_utc, build_sqlite_engine, utc_now
from fit_check.storage.sqlmodel_models import RunSnapshot

logger = logging.getLogger(__name__)

SUSPENDED_STATUS = "suspended"


class SnapshotStore(Protocol):
    """Narrow persistence interface for suspend/resume."""

    async def save(
        self,
        run_id: str,
        state: RunState,
        ttl_seconds: int | None = None,
    ) -> None:
        """Persist (or overwrite) the snapshot of ``run_id``."""

    async def load(self, run_id: str) -> RunState | None:
        """Return the snapshot, or ``None`` when missing or expired."""

    async def delete(self, run_id: str) -> None:
        """Drop the snapshot; missing snapshots are ignored."""

    async def exists(self, run_id: str) -> bool:
        """True when a live snapshot exists."""


@dataclass(slots=True)
class SnapshotInfo:
    """Listing row for stored snapshots."""

    run_id: str
    stage: str
    status: str
    updated_at: datetime
    expires_at: datetime | None


class InMemorySnapshotStore:
    """Dict-backed store; states are kept serialized so callers never share objects."""

    def __init__(self, *, default_ttl_seconds: int | None = None, clock=time.monotonic) -> None:
        self._entries: dict[str, tuple[str, float | None]] = {}
        self._default_ttl = default_ttl_seconds
        self._clock = clock

    async def save(self, run_id: str, state: RunState, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        expires_at = self._clock() + ttl if ttl is not None else None
        self._entries[run_id] = (json.dumps(state.to_dict()), expires_at)

    async def load(self, run_id: str) -> RunState | None:
        payload = self._live_payload(run_id)
        if payload is None:
            return None
        return RunState.from_dict(json.loads(payload))

    async def delete(self, run_id: str) -> None:
        self._entries.pop(run_id, None)

    async def exists(self, run_id: str) -> bool:
        return self._live_payload(run_id) is not None

    def __len__(self) -> int:
        return len(self._entries)

    def _live_payload(self, run_id: str) -> str | None:
        entry = self._entries.get(run_id)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[run_id]
            return None
        return payload


class SqliteSnapshotStore:
    """SQLite-backed store; blocking SQLModel calls run in worker threads."""

    def __init__(
        self,
        db_path: Path,
        *,
        default_ttl_seconds: int | None = None,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self._default_ttl = default_ttl_seconds
        self._engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def init_schema(self) -> None:
        """Apply migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def close(self) -> None:
        self._engine.dispose()

    async def save(self, run_id: str, state: RunState, ttl_seconds: int | None = None) -> None:
        await asyncio.to_thread(self.save_sync, run_id, state, ttl_seconds)

    async def load(self, run_id: str) -> RunState | None:
        return await asyncio.to_thread(self.load_sync, run_id)

    async def delete(self, run_id: str) -> None:
        await asyncio.to_thread(self.delete_sync, run_id)

    async def exists(self, run_id: str) -> bool:
        return await asyncio.to_thread(self.exists_sync, run_id)

    def save_sync(self, run_id: str, state: RunState, ttl_seconds: int | None = None) -> None:
        ttl = ttl_seconds if ttl_seconds is not None else self._default_ttl
        now = utc_now()
        expires_at = now + timedelta(seconds=ttl) if ttl is not None else None
        with Session(self._engine) as session:
            row = session.get(RunSnapshot, run_id)
            if row is None:
                row = RunSnapshot(
                    run_id=run_id,
                    stage=state.current_stage.value,
                    status=SUSPENDED_STATUS,
                    state_json="",
                    created_at=now,
                    updated_at=now,
                )
            row.stage = state.current_stage.value
            row.status = SUSPENDED_STATUS
            row.state_json = json.dumps(state.to_dict())
            row.updated_at = now
            row.expires_at = expires_at
            session.add(row)
            session.commit()
        logger.debug("Saved snapshot for run %s at stage %s", run_id, state.current_stage.value)

    def load_sync(self, run_id: str) -> RunState | None:
        with Session(self._engine) as session:
            row = session.get(RunSnapshot, run_id)
            if row is None:
                return None
            if self._expired(row):
                session.delete(row)
                session.commit()
                return None
            payload = row.state_json
        return RunState.from_dict(json.loads(payload))

    def delete_sync(self, run_id: str) -> None:
        with Session(self._engine) as session:
            row = session.get(RunSnapshot, run_id)
            if row is not None:
                session.delete(row)
                session.commit()

    def exists_sync(self, run_id: str) -> bool:
        with Session(self._engine) as session:
            row = session.get(RunSnapshot, run_id)
            return row is not None and not self._expired(row)

    def list_runs(self) -> list[SnapshotInfo]:
        """Live snapshots, most recently updated first."""

        now = utc_now()
        with Session(self._engine) as session:
            rows = session.exec(
                select(RunSnapshot).order_by(col(RunSnapshot.updated_at).desc()),
            ).all()
            return [
                SnapshotInfo(
                    run_id=row.run_id,
                    stage=row.stage,
                    status=row.status,
                    updated_at=as_utc(row.updated_at),
                    expires_at=as_utc(row.expires_at) if row.expires_at else None,
                )
                for row in rows
                if row.expires_at is None or as_utc(row.expires_at) > now
            ]

    def purge_expired(self) -> int:
        """Delete expired snapshots; returns the number removed."""

        now = utc_now()
        with Session(self._engine) as session:
            rows = session.exec(
                select(RunSnapshot).where(
                    col(RunSnapshot.expires_at).is_not(None),
                    col(RunSnapshot.expires_at) <= now,
                ),
            ).all()
            for row in rows:
                session.delete(row)
            session.commit()
            return len(rows)

    @staticmethod
    def _expired(row: RunSnapshot) -> bool:
        return row.expires_at is not None and as_utc(row.expires_at) <= utc_now()
