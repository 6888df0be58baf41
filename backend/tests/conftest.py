import asyncio
import os

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_coachtrack.db")

import pytest
from fastapi.testclient import TestClient

from coachtrack.db.database import Base, create_engine_for_url, make_session_factory
from coachtrack.main import app
from coachtrack.services import ChangeFeed, LiveUpdateListener, ProcessingTracker
from coachtrack.services.stores import SqlPipelineProgressStore, SqlSessionStore
from coachtrack.services.tracker_runtime import TrackerRuntime, get_runtime, get_tracker


async def _create_schema(url):
    engine = await create_engine_for_url(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'coachtrack.db'}"


@pytest.fixture
async def session_factory(db_url):
    engine = await _create_schema(db_url)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def session_store(session_factory, feed):
    return SqlSessionStore(session_factory, feed)


@pytest.fixture
def pipeline_store(session_factory, feed):
    return SqlPipelineProgressStore(session_factory, feed)


@pytest.fixture
def tracker(session_store, pipeline_store):
    return ProcessingTracker(session_store, pipeline_store)


@pytest.fixture
def listener(feed, tracker):
    live = LiveUpdateListener(feed, tracker.state_for)
    yield live
    live.close()


@pytest.fixture
def client(db_url):
    engine = asyncio.run(_create_schema(db_url))
    runtime = TrackerRuntime(make_session_factory(engine))
    app.dependency_overrides[get_runtime] = lambda: runtime
    app.dependency_overrides[get_tracker] = lambda: runtime.tracker
    yield TestClient(app)
    app.dependency_overrides.clear()
    runtime.close()
    asyncio.run(engine.dispose())
