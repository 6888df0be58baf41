import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from ..db.database import get_engine, Base, dispose_engine
from ..services import processing_service
from ..services.tracker_runtime import init_runtime, reset_runtime
from ..config import settings


scheduler = AsyncIOScheduler()
logger = logging.getLogger(__name__)

for _logger_name in (
    "apscheduler.executors.default",
    "apscheduler.scheduler",
    "apscheduler.jobstores.default",
):
    logging.getLogger(_logger_name).setLevel(logging.WARNING)


# Sweep for sessions abandoned in started/processing
async def expire_stale_processing_sessions():
    """Fail sessions with no progress for STALE_SESSION_TIMEOUT_MINUTES."""
    logger.info("Running sweep for stale processing sessions...")
    runtime = await init_runtime()
    result = await runtime.tracker.expire_stale_sessions(settings.STALE_SESSION_TIMEOUT_MINUTES)
    if result.ok:
        logger.info("Sweep completed: %d sessions expired", len(result.data))
    else:
        logger.error("Error during stale session sweep: %s", result.message)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Manage application lifecycle including startup and shutdown events."""
    logger.info("Starting application...")

    try:
        # Initialize database engine and create tables
        engine = await get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("✅ Database tables created/verified")

        await init_runtime()

        if settings.SCHEDULER_ENABLED:
            scheduler.add_job(
                expire_stale_processing_sessions,
                "interval",
                minutes=settings.STALE_SESSION_SWEEP_MINUTES,
                id="expire_stale_processing_sessions",
                replace_existing=True
            )
            scheduler.start()
            logger.info("✅ Scheduler started with stale session sweep")

        yield
    except Exception as e:  # noqa: BLE001
        logger.error("Error during startup: %s", e, exc_info=True)
        raise
    finally:
        logger.info("Shutting down application...")
        await processing_service.shutdown_active_tasks(timeout=settings.TASK_SHUTDOWN_TIMEOUT_SECONDS)
        if scheduler.running:
            scheduler.shutdown()
            logger.info("Scheduler stopped.")
        reset_runtime()
        await dispose_engine()
        logger.info("Application shutdown complete.")
