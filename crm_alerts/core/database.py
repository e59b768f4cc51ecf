"""Database connection and session management.

Transaction Guarantees:
- Each request gets its own session
- On success the session commits, on any exception it rolls back
- Handlers mutate single rows only; there is no multi-row transaction
  spanning a whole batch, so a crash mid-run leaves earlier rows committed
"""

import logging
import ssl
from collections.abc import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _connect_args(db_url: str) -> dict:
    settings = get_settings()
    connect_args: dict = {}
    # Managed Postgres behind pgbouncer: SSL on, prepared statements off
    if settings.environment == "production" or "supabase" in db_url or "pooler" in db_url:
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        connect_args["ssl"] = ssl_context
        connect_args["prepared_statement_cache_size"] = 0
        connect_args["statement_cache_size"] = 0
        logger.info("Using SSL for database connection with pgbouncer compatibility")
    return connect_args


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = settings.database_url_async
        logger.info(f"Async Database URL (masked): {db_url[:40]}...")
        _engine = create_async_engine(
            db_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.database_echo,
            pool_pre_ping=True,
            pool_recycle=300,
            connect_args=_connect_args(db_url),
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory bound to the engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides a transactional database session.

    - On successful completion: COMMIT
    - On any exception: ROLLBACK
    - Session is always closed
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise
        except Exception as e:
            await session.rollback()
            logger.error(f"Error during request, transaction rolled back: {e}")
            raise


async def init_db() -> None:
    """Initialize database (create tables if needed)."""
    from ..models import Base

    async with get_engine().begin() as conn:
        # In production, use migrations instead
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
