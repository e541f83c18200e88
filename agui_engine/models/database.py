"""
Database configuration and session management for the run archive.
Uses SQLite through SQLAlchemy's async engine (aiosqlite).

SQLite Configuration:
- WAL (Write-Ahead Logging) mode for better concurrency
- Foreign key constraints enforcement
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy import event, text
from contextlib import asynccontextmanager
import structlog

from agui_engine.config.settings import settings

logger = structlog.get_logger()

# Base class for models
Base = declarative_base()


def _enable_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign keys for each connection; the pragma is not persistent"""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Database helper class owning the engine and session factory"""

    def __init__(self, url: str = None, echo: bool = None):
        self.url = url or settings.database_url
        self.engine = create_async_engine(
            self.url,
            echo=settings.database_echo if echo is None else echo,
            future=True,
            connect_args=settings.get_connection_args(),
        )
        event.listen(self.engine.sync_engine, "connect", _enable_foreign_keys)

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("database_engine_created", type="sqlite", url=self.url)

    async def init(self):
        """
        Initialize database schema and SQLite optimizations.
        """
        async with self.engine.begin() as conn:
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA foreign_keys=ON"))
            await conn.execute(text("PRAGMA synchronous=NORMAL"))

            await conn.run_sync(Base.metadata.create_all)

        logger.info("database_initialized", type="sqlite", journal_mode="WAL")

    async def close(self):
        """Close all connections"""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """
        Get a database session outside of FastAPI routes.

        Usage:
            async with db.session() as session:
                result = await session.execute(...)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

