"""
Database module for songreel.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from songreel.db.engine import async_session, engine, shutdown
from songreel.db.models import FALLBACK_PROMPT, Base, Clip, PipelineRun, Project

logger = logging.getLogger(__name__)


async def init_database():
    """Initialize database schema on first run."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database ready at {engine.url}")


__all__ = [
    "Base",
    "Project",
    "Clip",
    "PipelineRun",
    "FALLBACK_PROMPT",
    "engine",
    "async_session",
    "shutdown",
    "init_database",
]
