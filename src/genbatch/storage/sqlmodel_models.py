"""SQLModel ORM tables for batch state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

SINGLETON_ROW_ID = 1


class BatchJob(SQLModel, table=True):
    __tablename__ = "batch_jobs"  # type: ignore[bad-override]

    job_index: int = Field(primary_key=True)
    input_text: str = Field(sa_column=Column(Text, nullable=False))


class RunSettingsRow(SQLModel, table=True):
    __tablename__ = "run_settings"  # type: ignore[bad-override]

    settings_id: int = Field(default=SINGLETON_ROW_ID, primary_key=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunStateRow(SQLModel, table=True):
    __tablename__ = "run_state"  # type: ignore[bad-override]

    state_id: int = Field(default=SINGLETON_ROW_ID, primary_key=True)
    next_index: int = 0
    status: str = "idle"
    stop_requested: bool = False
    updated_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class DedupResult(SQLModel, table=True):
    __tablename__ = "dedup_results"  # type: ignore[bad-override]

    result_id: str = Field(primary_key=True)
    artifact_id: str | None = None
    stored_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SkippedJob(SQLModel, table=True):
    __tablename__ = "skipped_jobs"  # type: ignore[bad-override]

    skip_id: int | None = Field(default=None, primary_key=True)
    job_index: int = Field(index=True)
    reason: str = Field(sa_column=Column(Text, nullable=False))
    skipped_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RunLogLine(SQLModel, table=True):
    __tablename__ = "run_log"  # type: ignore[bad-override]

    log_id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    level: str = "info"
    message: str = Field(sa_column=Column(Text, nullable=False))
