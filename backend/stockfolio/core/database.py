"""
Database engine and session management.

Automatically configures the async engine based on DATABASE_URL:
- SQLite (aiosqlite): NullPool, foreign keys enforced per connection, and
  every transaction opened with BEGIN IMMEDIATE so it holds the database
  write lock from its first statement (SQLite ignores FOR UPDATE)
- PostgreSQL (asyncpg): connection pooling with sensible defaults
"""

from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from stockfolio.core.config import settings

Base = declarative_base()


def create_engine_for_url(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with settings appropriate for the database type."""
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _configure_sqlite(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # The driver's own implicit BEGIN is deferred; _begin_immediate
            # issues the BEGIN instead.
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows handed back to callers must stay readable after commit.
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


engine: AsyncEngine = create_engine_for_url(settings.DATABASE_URL, echo=settings.DB_ECHO)
AsyncSessionLocal = create_session_factory(engine)


async def init_db(target: Optional[AsyncEngine] = None) -> None:
    """Create all tables. Used for local bootstrap and tests."""
    # Import models so they register on Base.metadata
    import stockfolio.models  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine's connection pool."""
    await engine.dispose()
