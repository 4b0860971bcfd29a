"""
Database engine and session management with SQLAlchemy async

PostgreSQL (asyncpg) in deployments; SQLite (aiosqlite) is accepted for local
runs and tests.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool
from sqlalchemy import text
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def build_engine(database_url: str = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine; sync steps are short, so connections are not pooled"""
    database_url = database_url or settings.DATABASE_URL
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Concurrent steps wait for the writer instead of failing immediately
        connect_args["timeout"] = 30

    return create_async_engine(
        database_url,
        echo=echo,
        poolclass=NullPool,
        connect_args=connect_args,
    )


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    # Sessions outlive commits inside a step, so objects must not expire
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(echo=settings.ENVIRONMENT == "development")
async_session_maker = build_session_maker(engine)


async def check_connection(session: AsyncSession) -> bool:
    """True when a trivial query succeeds on the session's connection"""
    try:
        await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")
        return False


async def dispose_engine() -> None:
    await engine.dispose()
    logger.info("Database engine disposed")
