import asyncio
import logging
from typing import Optional, Callable

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
from sqlalchemy.pool import NullPool
from sqlalchemy.exc import SQLAlchemyError
from ..config import settings

logger = logging.getLogger(__name__)

class _DBState:
    def __init__(self) -> None:
        self.engine: Optional[AsyncEngine] = None  # Lazy-initialized async engine instance
        self.session_factory: Optional[Callable[[], AsyncSession]] = None


state = _DBState()

# ✅ Local SQLite
async def _create_local_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    local_engine = create_async_engine(
        url,
        poolclass=NullPool,
        connect_args={"check_same_thread": False},
    )
    return local_engine

# ✅ Retry-enabled server connection
async def _create_server_engine_with_retry(url: str, max_retries: int = 5, wait_seconds: float = 2) -> AsyncEngine:
    logger.info("Connecting to database server: %s", url.split("@")[-1])

    last_exc: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            new_engine = create_async_engine(
                url,
                pool_recycle=settings.DB_POOL_RECYCLE,
                pool_pre_ping=settings.DB_POOL_PRE_PING,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                connect_args={"connect_timeout": settings.DB_CONNECT_TIMEOUT},
            )
            async with new_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("✅ Database server connected on attempt %d", attempt)
            return new_engine
        except SQLAlchemyError as e:
            last_exc = e
            logger.warning("Retry %d/%d failed: %s", attempt, max_retries, e)
            await asyncio.sleep(wait_seconds)
    raise last_exc if last_exc else Exception("Failed to connect to database server")


async def create_engine_for_url(url: str) -> AsyncEngine:
    """Build an engine for ``url``; SQLite URLs skip the connection retry loop."""
    if url.startswith("sqlite"):
        return await _create_local_engine(url)
    return await _create_server_engine_with_retry(url, max_retries=settings.DB_CONNECT_RETRIES)


def make_session_factory(engine: AsyncEngine) -> Callable[[], AsyncSession]:
    return async_sessionmaker(
        engine,
        expire_on_commit=False,
        autoflush=False,
    )


# ✅ Select engine based on DATABASE_URL
async def get_engine() -> AsyncEngine:
    """Get or create the global database engine based on configuration."""
    if state.engine is None:
        if settings.DATABASE_URL.startswith("sqlite"):
            logger.info("Using LOCAL SQLite database.")
        else:
            logger.info("Using server database.")
        state.engine = await create_engine_for_url(settings.DATABASE_URL)
        state.session_factory = make_session_factory(state.engine)
    return state.engine


async def get_session_factory() -> Callable[[], AsyncSession]:
    await get_engine()
    if state.session_factory is None:
        raise RuntimeError("Async session factory not initialized")
    return state.session_factory


async def dispose_engine() -> None:
    if state.engine is not None:
        await state.engine.dispose()
    state.engine = None
    state.session_factory = None


Base = declarative_base()
