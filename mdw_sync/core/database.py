"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncGenerator, Any, Dict, Iterable, List, Optional, Sequence
from contextlib import asynccontextmanager

from sqlalchemy import JSON, func, or_, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)
from sqlalchemy.pool import NullPool

from .config import settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)

# Global engine and session maker
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(database_url: Optional[str] = None) -> None:
    """Initialize database connections and session makers."""
    global async_engine, async_session_maker

    logger.info("Initializing database connections")

    url = DatabaseConfig.get_database_url(database_url, async_driver=True)
    engine_config = DatabaseConfig.get_engine_config(url)
    if url.startswith("sqlite"):
        # One connection per session so concurrent sessions keep separate transactions
        engine_config["poolclass"] = NullPool

    async_engine = create_async_engine(url, **engine_config, echo=settings.debug)

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database connections initialized", dialect=async_engine.dialect.name)


def is_database_initialized() -> bool:
    return async_session_maker is not None


async def close_database() -> None:
    """Close database connections."""
    global async_engine, async_session_maker

    logger.info("Closing database connections")

    if async_engine:
        await async_engine.dispose()

    async_engine = None
    async_session_maker = None

    logger.info("Database connections closed")


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session with automatic cleanup.

    Usage:
        async with get_async_session() as session:
            # Use session here
            pass
    """
    if not async_session_maker:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def _dialect_insert(session: AsyncSession):
    if session.bind.dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


async def upsert(
    session: AsyncSession,
    model,
    rows: Sequence[Dict[str, Any]],
    conflict_columns: Iterable[str],
    update_columns: Optional[Iterable[str]] = None,
    skip_unchanged: bool = False,
) -> None:
    """
    Insert rows, updating existing ones on primary/unique key conflict.

    Args:
        session: Active session
        model: Mapped class
        rows: Row dicts, all with the same keys
        conflict_columns: Columns of the conflicting unique constraint
        update_columns: Columns to overwrite on conflict. Defaults to every
            supplied column except the conflict columns. Empty means do nothing.
        skip_unchanged: Only update rows where a non-JSON column actually
            differs from the incoming value
    """
    if not rows:
        return

    conflict_columns = list(conflict_columns)
    table = model.__table__
    stmt = _dialect_insert(session)(table).values(list(rows))

    if update_columns is None:
        update_columns = [key for key in rows[0] if key not in conflict_columns]
    update_columns = list(update_columns)

    if not update_columns:
        await session.execute(stmt.on_conflict_do_nothing(index_elements=conflict_columns))
        return

    set_ = {column: stmt.excluded[column] for column in update_columns}
    if "updated_at" in table.c and "updated_at" not in set_:
        set_["updated_at"] = func.now()

    where = None
    if skip_unchanged:
        comparable = [
            table.c[column].is_distinct_from(stmt.excluded[column])
            for column in update_columns
            if not isinstance(table.c[column].type, JSON)
        ]
        if comparable:
            where = or_(*comparable)

    await session.execute(
        stmt.on_conflict_do_update(index_elements=conflict_columns, set_=set_, where=where)
    )


def chunked(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    return [items[i:i + size] for i in range(0, len(items), size)]


class DatabaseManager:
    """Database manager for administrative operations."""

    @staticmethod
    async def create_tables() -> None:
        """Create all tables in the database."""
        from mdw_sync.models.base import Base

        if not async_engine:
            raise RuntimeError("Database not initialized")

        logger.info("Creating database tables")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @staticmethod
    async def drop_tables() -> None:
        """Drop all tables in the database."""
        from mdw_sync.models.base import Base

        if not async_engine:
            raise RuntimeError("Database not initialized")

        logger.warning("Dropping all database tables")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    @staticmethod
    async def health_check() -> bool:
        """Check database connectivity."""
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
