from collections.abc import AsyncIterator
from functools import lru_cache

from sqlalchemy import Engine, create_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from fundops.core.config import settings


class Base(DeclarativeBase):
    pass


# Engines are created on first use so importing models never needs a driver.

@lru_cache
def get_engine() -> AsyncEngine:
    return create_async_engine(settings.database_url, pool_pre_ping=True)


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)


@lru_cache
def get_sync_engine() -> Engine:
    return create_engine(settings.database_url_sync, pool_pre_ping=True)


def sync_session() -> Session:
    """Fresh sync session for Celery tasks."""
    return sessionmaker(get_sync_engine(), expire_on_commit=False)()


async def get_db() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
