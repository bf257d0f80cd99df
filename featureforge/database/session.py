"""Database session management using SQLModel + async SQLAlchemy."""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from featureforge.config import Settings, get_settings

# Registers every table on SQLModel.metadata before create_all
from featureforge.database import models as _models  # noqa: F401
from featureforge.durable import models as _durable_models  # noqa: F401


SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(database_url: str, *, echo: bool = False, settings: Settings | None = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict = {"echo": echo}
    if not database_url.startswith("sqlite"):
        settings = settings or get_settings()
        kwargs["pool_size"] = settings.database_pool_size
        kwargs["max_overflow"] = settings.database_max_overflow
    return create_async_engine(database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Session factory used by the persistence layer and the step substrate."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@lru_cache
def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings."""
    settings = get_settings()
    return create_engine(settings.database_url, echo=settings.debug, settings=settings)


@lru_cache
def get_session_factory() -> SessionFactory:
    return create_session_factory(get_engine())


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Initialize database tables.

    Note: In production, use Alembic migrations instead.
    This is here for development convenience.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def close_db(engine: AsyncEngine | None = None) -> None:
    """Close database connections."""
    await (engine or get_engine()).dispose()


@asynccontextmanager
async def session_scope(factory: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Open a session that commits on success and rolls back on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI routes."""
    async with session_scope(get_session_factory()) as session:
        yield session
