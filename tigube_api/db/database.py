"""Async SQLAlchemy engine, session factory and FastAPI session dependency."""

import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from tigube_api.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


class Base(DeclarativeBase):
    """Declarative base for all Tigube models."""


engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session for one request.

    The session is always closed when the request finishes; any
    transaction left open is rolled back by the close.
    """
    async with async_session_maker() as session:
        yield session


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    # Import models so they register on Base.metadata
    import tigube_api.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ensured")
