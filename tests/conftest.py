"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from genbatch.repository import BatchRepository
from tests.fakes import FakeClock


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(tmp_path: Path):
    repo = BatchRepository(tmp_path / "batch.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
