from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def make_engine(url: str, **kwargs) -> AsyncEngine:
    opts = {"echo": False, "future": True, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        opts["pool_recycle"] = 1800
    opts.update(kwargs)
    return create_async_engine(url, **opts)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def init_db(engine: AsyncEngine):
    from libris import models
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Unidad de trabajo: commit si el bloque termina bien, rollback ante cualquier error."""
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
