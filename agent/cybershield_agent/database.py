"""Database setup for the local config store.

The agent keeps its durable key/value configuration in a small SQLite file
inside the data directory. WAL mode lets the local API read while the session
or scheduler writes.
"""
import logging
import os

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

# Base class for models
Base = declarative_base()


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLite engine configured for concurrent access."""
    engine = create_async_engine(
        database_url,
        echo=False,
        future=True,
        connect_args={"timeout": 30},  # Wait up to 30 seconds for locks
    )

    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Configure SQLite for durability with concurrent readers."""
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        # FULL: a token write must survive power loss
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to the engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine, database_path: str | None = None):
    """Create tables, making sure the database directory exists."""
    if database_path:
        os.makedirs(os.path.dirname(database_path) or ".", exist_ok=True)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Config database initialized")


async def close_db(engine: AsyncEngine):
    """Close database connections."""
    await engine.dispose()
