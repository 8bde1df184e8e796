from __future__ import annotations

import os
import tempfile

# Point the engine at a throwaway SQLite file before any module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="complaintwatch-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR}/complaintwatch.db")

import pytest  # noqa: E402

from complaintwatch.core.config import get_settings  # noqa: E402
from complaintwatch.domain.models import Base  # noqa: E402
from complaintwatch.persistence.db import engine  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Tests that monkeypatch env vars must not leak cached settings.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db() -> None:
    # Fresh schema per test; the engine is disposed so pooled connections never cross event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            await conn.execute(table.delete())
    await engine.dispose()
