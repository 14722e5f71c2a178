"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add tests directory to path so factories can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from factories import FakeClock  # noqa: E402

from hook0.storage import Hook0Storage  # noqa: E402


@pytest.fixture
def database_path(tmp_path: Path) -> Path:
    """Path of a fresh SQLite database."""
    return tmp_path / "hook0.db"


@pytest.fixture
async def storage(database_path: Path):
    """Initialized Attempt Store on a temporary database."""
    store = Hook0Storage(database_path)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at T0."""
    return FakeClock()
