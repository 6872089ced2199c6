"""Durable batch state backed by SQLModel + SQLite.

Holds the job list, the frozen run settings, the checkpoint, the dedup index,
skipped jobs and a bounded ring of operator log lines. Everything here survives
process restarts so an interrupted batch resumes at its checkpoint.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from genbatch.config import RunSettings
from genbatch.models import (
    Checkpoint,
    Job,
    LogLineView,
    RunStateView,
    RunStatus,
    SkippedJobView,
)
from genbatch.storage import migrations
from genbatch.storage.sqlite import SqlitePolicy, as_utc, state_engine, utc_now
from genbatch.storage.sqlmodel_models import (
    SINGLETON_ROW_ID,
    BatchJob,
    DedupResult,
    RunLogLine,
    RunSettingsRow,
    RunStateRow,
    SkippedJob,
)

DEFAULT_LOG_CAPACITY = 1_000


class BatchRepository:
    """Persistence facade for one batch."""

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        log_capacity: int = DEFAULT_LOG_CAPACITY,
    ) -> None:
        self.db_path = db_path
        self.log_capacity = log_capacity
        self.engine = state_engine(db_path, SqlitePolicy(busy_timeout_ms=sqlite_busy_timeout_ms))

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and make sure the run state row exists."""

        migrations.migrate(self.engine)
        with Session(self.engine) as session:
            if session.get(RunStateRow, SINGLETON_ROW_ID) is None:
                session.add(RunStateRow(state_id=SINGLETON_ROW_ID, updated_at=utc_now()))
                session.commit()

    def schema_revision(self) -> str | None:
        return migrations.schema_revision(self.engine)

    # -- jobs and settings ----------------------------------------------------

    def replace_jobs(self, jobs: Sequence[Job]) -> int:
        """Replace the stored job list; the checkpoint is left untouched."""

        with Session(self.engine) as session:
            session.exec(sa_delete(BatchJob))  # type: ignore[call-overload]
            session.add_all(BatchJob(job_index=job.index, input_text=job.input) for job in jobs)
            session.commit()
        return len(jobs)

    def load_jobs(self) -> list[Job]:
        with Session(self.engine) as session:
            rows = session.exec(select(BatchJob).order_by(col(BatchJob.job_index).asc())).all()
            return [Job(index=row.job_index, input=row.input_text) for row in rows]

    def count_jobs(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(BatchJob)).one()

    def save_settings(self, settings: RunSettings) -> None:
        payload = json.dumps(settings.to_dict(), sort_keys=True)
        with Session(self.engine) as session:
            row = session.get(RunSettingsRow, SINGLETON_ROW_ID)
            if row is None:
                row = RunSettingsRow(
                    settings_id=SINGLETON_ROW_ID,
                    payload_json=payload,
                    updated_at=utc_now(),
                )
            else:
                row.payload_json = payload
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def load_settings(self) -> RunSettings | None:
        with Session(self.engine) as session:
            row = session.get(RunSettingsRow, SINGLETON_ROW_ID)
            if row is None:
                return None
            return RunSettings.from_dict(json.loads(row.payload_json))

    # -- run state and checkpoint -----------------------------------------------

    def get_run_state(self) -> RunStateView:
        with Session(self.engine) as session:
            row = self._state_row(session)
            return RunStateView(
                next_index=row.next_index,
                status=RunStatus(row.status),
                stop_requested=row.stop_requested,
                updated_at=as_utc(row.updated_at) if row.updated_at else None,
            )

    def get_checkpoint(self) -> Checkpoint:
        return Checkpoint(next_index=self.get_run_state().next_index)

    def commit_checkpoint(self, next_index: int) -> Checkpoint:
        """Persist a new checkpoint; it may only move forward."""

        with Session(self.engine) as session:
            self._state_row(session)
            result = session.exec(  # type: ignore[call-overload]
                sa_update(RunStateRow)
                .where(
                    col(RunStateRow.state_id) == SINGLETON_ROW_ID,
                    col(RunStateRow.next_index) <= next_index,
                )
                .values(next_index=next_index, updated_at=utc_now()),
            )
            if result.rowcount != 1:
                session.rollback()
                current = self._state_row(session).next_index
                raise ValueError(
                    f"Checkpoint cannot move backwards: current={current} requested={next_index}",
                )
            session.commit()
        return Checkpoint(next_index=next_index)

    def set_status(self, status: RunStatus) -> None:
        self._update_state(status=status.value)

    def request_stop(self) -> None:
        """Record an advisory stop request for a run in another process."""

        self._update_state(stop_requested=True)

    def clear_stop_request(self) -> None:
        self._update_state(stop_requested=False)

    def stop_requested(self) -> bool:
        return self.get_run_state().stop_requested

    def reset(self, *, keep_jobs: bool = False) -> None:
        """Rewind the batch: checkpoint 0, no dedup history, no skips."""

        with Session(self.engine) as session:
            if not keep_jobs:
                session.exec(sa_delete(BatchJob))  # type: ignore[call-overload]
            session.exec(sa_delete(DedupResult))  # type: ignore[call-overload]
            session.exec(sa_delete(SkippedJob))  # type: ignore[call-overload]
            row = self._state_row(session)
            row.next_index = 0
            row.status = RunStatus.IDLE.value
            row.stop_requested = False
            row.updated_at = utc_now()
            session.add(row)
            session.commit()

    # -- skipped jobs -----------------------------------------------------------

    def record_skip(self, *, job_index: int, reason: str) -> None:
        with Session(self.engine) as session:
            session.add(SkippedJob(job_index=job_index, reason=reason, skipped_at=utc_now()))
            session.commit()

    def list_skipped(self) -> list[SkippedJobView]:
        with Session(self.engine) as session:
            rows = session.exec(select(SkippedJob).order_by(col(SkippedJob.skip_id).asc())).all()
            return [
                SkippedJobView(
                    job_index=row.job_index,
                    reason=row.reason,
                    skipped_at=as_utc(row.skipped_at),
                )
                for row in rows
            ]

    # -- log ring -------------------------------------------------------------

    def append_log(self, message: str, *, level: str = "info") -> None:
        """Append a log line and drop the oldest lines beyond capacity."""

        with Session(self.engine) as session:
            row = RunLogLine(created_at=utc_now(), level=level, message=message)
            session.add(row)
            session.flush()
            if row.log_id is not None and row.log_id > self.log_capacity:
                session.exec(  # type: ignore[call-overload]
                    sa_delete(RunLogLine).where(
                        col(RunLogLine.log_id) <= row.log_id - self.log_capacity,
                    ),
                )
            session.commit()

    def recent_logs(self, *, limit: int | None = None) -> list[LogLineView]:
        """Return the newest lines in chronological order."""

        with Session(self.engine) as session:
            statement = select(RunLogLine).order_by(col(RunLogLine.log_id).desc())
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [
                LogLineView(
                    log_id=row.log_id or 0,
                    created_at=as_utc(row.created_at),
                    level=row.level,
                    message=row.message,
                )
                for row in reversed(rows)
            ]

    def clear_logs(self) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(RunLogLine))  # type: ignore[call-overload]
            session.commit()

    # -- dedup index ----------------------------------------------------------

    def dedup_index(self) -> SqlDedupIndex:
        return SqlDedupIndex(self)

    def dedup_count(self) -> int:
        with Session(self.engine) as session:
            return session.exec(select(func.count()).select_from(DedupResult)).one()

    def _state_row(self, session: Session) -> RunStateRow:
        row = session.get(RunStateRow, SINGLETON_ROW_ID)
        if row is None:
            row = RunStateRow(state_id=SINGLETON_ROW_ID, updated_at=utc_now())
            session.add(row)
            session.flush()
        return row

    def _update_state(self, **values: object) -> None:
        with Session(self.engine) as session:
            row = self._state_row(session)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = utc_now()
            session.add(row)
            session.commit()


class SqlDedupIndex:
    """DedupIndex persisted in the batch database."""

    def __init__(self, repository: BatchRepository) -> None:
        self._engine = repository.engine

    def contains(self, result_id: str) -> bool:
        with Session(self._engine) as session:
            return session.get(DedupResult, result_id) is not None

    def add(self, result_id: str, *, artifact_id: str | None = None) -> None:
        with Session(self._engine) as session:
            if session.get(DedupResult, result_id) is not None:
                return
            session.add(
                DedupResult(result_id=result_id, artifact_id=artifact_id, stored_at=utc_now()),
            )
            session.commit()

    def clear(self) -> None:
        with Session(self._engine) as session:
            session.exec(sa_delete(DedupResult))  # type: ignore[call-overload]
            session.commit()
