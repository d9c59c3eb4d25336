"""
Database session configuration.

This module handles database engine creation and session management
using SQLAlchemy with async support for PostgreSQL.
"""

from typing import Union

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncConnection,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.orm import declarative_base
from taskbox.app.core.config import settings

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    future=True,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create declarative base for models
Base = declarative_base()

# Anything a task can be enqueued on: an ORM session or a raw connection,
# either of which may hold an open transaction owned by the caller.
DbExecutor = Union[AsyncSession, AsyncConnection]


def dialect_name(executor: DbExecutor) -> str:
    """Return the SQL dialect name ("postgresql", "sqlite") behind an executor."""
    if isinstance(executor, AsyncConnection):
        return executor.dialect.name
    return executor.bind.dialect.name


async def get_db():
    """
    FastAPI dependency for database sessions.

    Yields an async database session and ensures it's properly closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    FastAPI dependency for the session factory.

    Handed to code that opens its own transactions (the dispatcher).
    """
    return AsyncSessionLocal
