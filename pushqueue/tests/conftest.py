from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine

from pushqueue.core.config import get_settings
from pushqueue.domain.models import Base
from pushqueue.persistence.db import build_engine, build_sessionmaker


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; clear around each test so env overrides never leak.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def queue_engine(tmp_path) -> AsyncEngine:
    # A file-backed SQLite database lets several sessions race on the same rows.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pushqueue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(queue_engine):
    return build_sessionmaker(queue_engine)
