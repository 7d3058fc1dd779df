"""SQLModel ORM tables for run snapshots."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class RunSnapshot(SQLModel, table=True):
    __tablename__ = "run_snapshots"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    stage: str = Field(index=True)
    status: str = Field(index=True)
    state_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True, index=True),
    )
