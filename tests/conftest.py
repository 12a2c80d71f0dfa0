"""Shared fixtures: zero-delay timings, a fake page and a temp session store."""

from __future__ import annotations

from dataclasses import fields
from pathlib import Path

import aiosqlite
import pytest

from src.constants import Timings
from src.database.models import initialize_db
from src.database.repository import SessionRepository
from tests.helpers import FakeClock, make_page


@pytest.fixture
def fast_timings() -> Timings:
    """Every wait zeroed except the attempt counts and the liveness probe."""
    zeroed = {
        f.name: 0
        for f in fields(Timings)
        if not f.name.endswith("attempts") and f.name != "liveness_probe_timeout"
    }
    return Timings(**zeroed, liveness_probe_timeout=1.0)


@pytest.fixture
def page():
    return make_page()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(tmp_path: Path):
    conn = await aiosqlite.connect(str(tmp_path / "sessions.db"))
    await initialize_db(conn)
    yield conn
    await conn.close()


@pytest.fixture
async def repo(db, clock) -> SessionRepository:
    return SessionRepository(db, clock=clock)
