"""
Shared fixtures: temp-file SQLite database, controllable clock and a fully
wired orchestrator.
"""
import os

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import NullPool

from contest_engine.config.feature_flags import EngineSettings
from contest_engine.database import build_session_factory, init_db
from contest_engine.orm.contest import ContestDifficulty
from contest_engine.realtime.in_memory_adapter import InMemoryAdapter
from contest_engine.services.contest_orchestrator import ContestOrchestrator
from contest_engine.services.leaderboard_aggregator import LeaderboardAggregator

# Wednesday; week started Monday 2024-05-13, month started 2024-05-01
START = datetime(2024, 5, 15, 12, 0, 0)


class FakeClock:
    """Settable naive-UTC clock shared by the aggregator and orchestrator."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


@pytest.fixture
def make_definition(clock):
    """Factory for valid contest definitions, LIVE at the current clock time."""
    def _make(**overrides) -> dict:
        definition = {
            "title": "Constitutional Law Sprint",
            "description": "Ten questions, thirty minutes",
            "subject_id": "constitutional-law",
            "difficulty": ContestDifficulty.MEDIUM,
            "question_count": 10,
            "duration_minutes": 30,
            "start_time": clock.now - timedelta(hours=1),
            "end_time": clock.now + timedelta(hours=2),
            "max_participants": 100,
            "prize": "Gold badge",
        }
        definition.update(overrides)
        return definition
    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> EngineSettings:
    return EngineSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/engine.db",
        rank_ties_require_same_time=False,
        version_retention=3,
        max_page_size=50,
        subscriber_queue_size=4,
        in_progress_grace_minutes=15,
    )


@pytest_asyncio.fixture
async def engine(settings):
    """Create test database engine."""
    engine = create_async_engine(settings.database_url, poolclass=NullPool, echo=False)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def broadcast() -> AsyncGenerator[InMemoryAdapter, None]:
    adapter = InMemoryAdapter(max_queue_size=4)
    yield adapter
    await adapter.close()


@pytest.fixture
def aggregator(broadcast, settings, clock) -> LeaderboardAggregator:
    return LeaderboardAggregator(broadcast, settings, clock=clock)


@pytest.fixture
def orchestrator(session_factory, aggregator, settings, clock) -> ContestOrchestrator:
    return ContestOrchestrator(session_factory, aggregator, settings, clock=clock)
