"""
Database engine configuration for songreel.

Provides async SQLAlchemy engine with SQLite WAL mode,
crash-safe PRAGMA configuration, and session management.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from songreel.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Configure SQLite PRAGMA settings for crash safety and concurrent runs.

    - WAL mode: readers (status polling) never block the pipeline writer
    - Foreign keys: clips and run records cascade with their project
    - Busy timeout: wait up to 5s when two runs write at once
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


engine = create_async_engine(
    settings.storage.database_url,
    echo=False,
)

# aiosqlite exposes connect events only on the sync engine
event.listens_for(engine.sync_engine, "connect")(configure_sqlite_pragmas)

# expire_on_commit=False keeps loaded attributes usable after commit without
# an implicit (and in async, illegal) lazy reload
async_session = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
