"""Async database engine and session management."""
import logging
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from actionbot.config import Config
from actionbot.store.models import Base

logger = logging.getLogger(__name__)


def make_engine(database_url: str) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Engine for the API event loop. The scheduler thread builds its own engine
# inside its loop because async drivers bind connections to a loop.
try:
    engine = make_engine(Config.DATABASE_URL)
    AsyncSessionLocal = make_session_factory(engine)
except Exception as e:  # pragma: no cover - only triggered without a DB driver installed
    logger.warning("Unable to create async DB engine at import time: %s", e)
    engine = None
    AsyncSessionLocal = None


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create the action tables if they do not exist.

    Production deployments run `alembic upgrade head`; create_all is
    idempotent and keeps SQLite setups working without migrations.
    """
    target = target or engine
    if target is None:
        raise RuntimeError("Async DB engine not configured. Install DB driver or configure DATABASE_URL.")

    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Action tables initialized")


async def close_db() -> None:
    """Close database connection pool."""
    if engine is None:
        return
    await engine.dispose()
    logger.info("Database connections closed")
