import os
import logging
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./local.db").strip()


def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": False, "future": True}
    if url.lower().startswith("sqlite"):
        return kwargs
    # Managed Postgres drops idle connections
    kwargs.update({
        "pool_pre_ping": True,
        "pool_recycle": int(os.environ.get("DB_POOL_RECYCLE_SECONDS", "300").strip() or 300),
    })
    try:
        if os.environ.get("DB_POOL_SIZE"):
            kwargs["pool_size"] = int(os.environ.get("DB_POOL_SIZE", "").strip() or 5)
        if os.environ.get("DB_MAX_OVERFLOW"):
            kwargs["max_overflow"] = int(os.environ.get("DB_MAX_OVERFLOW", "").strip() or 10)
        if os.environ.get("DB_POOL_TIMEOUT"):
            kwargs["pool_timeout"] = int(os.environ.get("DB_POOL_TIMEOUT", "").strip() or 30)
    except ValueError as e:
        logger.warning("Ignoring invalid DB pool tuning: %s", e)
    return kwargs


engine = create_async_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session; routes take it via Depends(get_session)."""
    async with SessionLocal() as session:
        yield session


async def init_db(bind=None):
    """create_all on the given engine (the app engine by default). Idempotent."""
    from . import models  # noqa: F401  registers the tables

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
