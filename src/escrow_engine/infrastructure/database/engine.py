"""Async database engine and session management.

Provides:
    - build_engine: Create an async engine for a URL (PostgreSQL or SQLite).
    - get_session_factory: A sessionmaker bound to the configured engine.
    - create_schema: Create every table on an engine (dev, tests, simulation).
    - init_db / close_db: Lifecycle hooks for FastAPI's lifespan.

Sessions are owned by EscrowService, one per unit of work; the API layer
never opens its own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from escrow_engine.config import get_settings
from escrow_engine.infrastructure.database.orm_models import Base
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_engine.config import Settings

logger = get_logger(__name__)

# Module-level singletons (initialized in init_db)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    settings = settings or get_settings()
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=settings.db_echo_sql)
    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_pre_ping=True,
        echo=settings.db_echo_sql,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def _get_engine() -> AsyncEngine:
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url, settings)
        logger.info(
            "database.engine_created",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(_get_engine())
    return _session_factory


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    Called during FastAPI's lifespan startup. In production, use Alembic
    migrations instead of create_all.
    """
    engine = _get_engine()
    settings = get_settings()

    if settings.is_development:
        await create_schema(engine)
        logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine. Called during FastAPI's lifespan shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
