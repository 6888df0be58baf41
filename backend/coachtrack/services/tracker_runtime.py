"""
Process-wide wiring of the change feed, stores, tracker and live listener.
"""
import logging
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..db.database import get_session_factory
from .change_feed import ChangeFeed
from .live_updates import LiveUpdateListener
from .stores import SqlPipelineProgressStore, SqlSessionStore
from .tracker_service import ProcessingTracker

logger = logging.getLogger(__name__)


class TrackerRuntime:
    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.feed = ChangeFeed()
        self.tracker = ProcessingTracker(
            SqlSessionStore(session_factory, self.feed),
            SqlPipelineProgressStore(session_factory, self.feed),
        )
        self.listener = LiveUpdateListener(self.feed, self.tracker.state_for)

    def close(self) -> None:
        self.listener.close()


_runtime: Optional[TrackerRuntime] = None


async def init_runtime(session_factory: Optional[Callable[[], AsyncSession]] = None) -> TrackerRuntime:
    """Get or create the singleton runtime, bound to the configured database by default."""
    global _runtime
    if _runtime is None:
        _runtime = TrackerRuntime(session_factory or await get_session_factory())
        logger.info("Tracker runtime initialised")
    return _runtime


def reset_runtime() -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
    _runtime = None


# ✅ FastAPI dependencies
async def get_runtime() -> TrackerRuntime:
    return await init_runtime()


async def get_tracker() -> ProcessingTracker:
    return (await init_runtime()).tracker
