from pathlib import Path

import allure
import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from genbatch.repository import BatchRepository

pytestmark = [
    allure.epic("Batch Generation"),
    allure.feature("Durable Batch State"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = BatchRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars()
        table_names = list(tables)
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar()
        synchronous = connection.execute(text("PRAGMA synchronous")).scalar()
    revision = repository.schema_revision()
    repository.close()

    assert version == "20261017_0001"
    assert table_names == [
        "batch_jobs",
        "dedup_results",
        "run_log",
        "run_settings",
        "run_state",
        "skipped_jobs",
    ]
    assert journal_mode == "wal"
    # NORMAL
    assert synchronous == 1
    assert revision == "20261017_0001"


def test_checkpoint_cannot_be_negative_at_schema_level(tmp_path: Path) -> None:
    repository = BatchRepository(tmp_path / "migrations.db")
    repository.init_schema()

    try:
        with repository.engine.connect() as connection:
            with pytest.raises(IntegrityError, match="CHECK constraint failed"):
                connection.execute(text("UPDATE run_state SET next_index = -1"))
    finally:
        repository.close()


def test_state_database_directory_is_created(tmp_path: Path) -> None:
    repository = BatchRepository(tmp_path / "nested" / "state" / "batch.db")
    try:
        repository.init_schema()
        assert repository.schema_revision() == "20261017_0001"
    finally:
        repository.close()

    assert (tmp_path / "nested" / "state" / "batch.db").exists()
