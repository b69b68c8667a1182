"""
Async Database Session Management

Handles SQLAlchemy async engine and session lifecycle, the FastAPI store
dependency, and the SlotStore handle the scheduling core is given.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from timeslots.config import Settings, settings
from timeslots.db.models import Base
from timeslots.db.repository import translate_db_error

logger = logging.getLogger(__name__)


_engine: AsyncEngine | None = None


def build_engine(config: Settings) -> AsyncEngine:
    """
    Create an async engine for the configured database.

    PostgreSQL gets the pooled configuration; SQLite gets the lock timeout as
    its busy timeout so writers wait for each other instead of failing.
    """
    if config.is_sqlite:
        return create_async_engine(
            config.database_url_str,
            echo=config.db_echo,
            connect_args={"timeout": config.db_lock_timeout_ms / 1000},
        )

    return create_async_engine(
        config.database_url_str,
        echo=config.db_echo,
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout,
        pool_recycle=config.db_pool_recycle,
        pool_pre_ping=True,  # Enable connection health checks
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,  # Prevent lazy loading after commit
    )


class SlotStore:
    """
    Handle on the durable slot store.

    The scheduling service receives one of these explicitly instead of
    reaching for module-level state. Every mutating operation runs inside
    ``transaction()``, which commits on normal exit and rolls back on any
    exception.
    """

    def __init__(self, engine: AsyncEngine, lock_timeout_ms: int = 5000):
        self.engine = engine
        self.lock_timeout_ms = lock_timeout_ms
        self._session_factory = build_session_factory(engine)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Open a session whose work commits or rolls back as one unit.

        Yields:
            AsyncSession: Session bound to a single database transaction

        Raises:
            LockTimeout: If a lock could not be acquired in time
            DatabaseError: On any other storage failure
        """
        session = self._session_factory()

        try:
            if self.dialect_name == "postgresql":
                await session.execute(
                    text(f"SET LOCAL lock_timeout = '{int(self.lock_timeout_ms)}ms'")
                )
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise translate_db_error(e) from e
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Read-only session; nothing is committed."""
        session = self._session_factory()
        try:
            yield session
        finally:
            await session.close()

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema created")

    async def dispose(self) -> None:
        await self.engine.dispose()


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine

    if _engine is None:
        _engine = build_engine(settings)
        logger.info(f"Database engine created ({_engine.dialect.name})")

    return _engine


def get_store() -> SlotStore:
    """FastAPI dependency returning the application's SlotStore."""
    return SlotStore(get_engine(), lock_timeout_ms=settings.db_lock_timeout_ms)


async def check_database_connection() -> bool:
    """
    Run a trivial query against the configured database.

    Returns:
        bool: True if the database answered, False otherwise
    """
    try:
        async with get_store().session() as session:
            await session.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database ping failed: {e}")
        return False


async def close_database_connection() -> None:
    """Dispose of the engine's pool. Called on application shutdown."""
    global _engine

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database engine disposed")
