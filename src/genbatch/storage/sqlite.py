"""SQLite engine and timestamps for the batch state database."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


@dataclass(slots=True, frozen=True)
class SqlitePolicy:
    """Connection policy for the state database.

    The running batch commits a checkpoint and log lines after every job while
    ``status`` and ``stop`` read and write from other processes, so the journal
    is WAL and writers wait up to ``busy_timeout_ms`` for the lock.
    """

    busy_timeout_ms: int = 5_000
    synchronous: str = "NORMAL"

    def pragmas(self) -> tuple[str, ...]:
        return (
            "PRAGMA journal_mode = WAL",
            f"PRAGMA synchronous = {self.synchronous}",
            f"PRAGMA busy_timeout = {max(1, self.busy_timeout_ms)}",
        )


def state_engine(db_path: Path, policy: SqlitePolicy) -> Engine:
    """Engine for the state database; every new connection gets the policy pragmas."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, policy.busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _apply_policy(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in policy.pragmas():
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite hands timestamps back naive; they were written as UTC."""

    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
