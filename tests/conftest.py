import os
import sys

import pytest
import pytest_asyncio

# Add the repository root to sys.path so the habit_engine package imports
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

from habit_engine.models.habit import HabitLog, HabitRoutine  # noqa: E402,F401
from habit_engine.services.analytics_cache import AnalyticsCache  # noqa: E402


@pytest_asyncio.fixture
async def db_session():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    TestSessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with TestSessionLocal() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def cache():
    return AnalyticsCache()


def routine_payload(**overrides):
    payload = {
        "name": "Morning run",
        "type": "exercise",
        "schedule": {"recurrence": {"kind": "daily"}, "time_start": "07:00"},
    }
    payload.update(overrides)
    return payload
