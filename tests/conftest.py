"""Shared fixtures: a SQLite-backed store set with the notification group created."""

from pathlib import Path

import pytest

from notifier.delivery import ensure_group
from notifier.stores import Stores, open_sqlite_stores

from support import GROUP, STREAM


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "notifier.db"


@pytest.fixture
async def stores(db_path: Path) -> Stores:
    s = open_sqlite_stores(db_path, poll_interval=0.01)
    await ensure_group(s.log, STREAM, GROUP)
    yield s
    await s.close()
