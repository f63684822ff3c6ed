from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from tenantbroker.core.config import Settings, get_settings


def engine_options(settings: Settings) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    # Control-plane reads sit on every tenant request; keep the pool bounded.
    options.update(
        pool_size=max(1, int(settings.api_db_pool_size)),
        max_overflow=max(0, int(settings.api_db_max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    if settings.api_db_statement_timeout_ms > 0:
        options["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return options


@lru_cache
def get_engine() -> AsyncEngine:
    # Built on first use so importing the API never opens a pool.
    settings = get_settings()
    return create_async_engine(settings.database_url, **engine_options(settings))


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_sessionmaker()() as session:
        yield session


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    """Session that commits on clean exit and rolls back on error.

    Used by maintenance scripts; request handlers commit explicitly.
    """
    async with get_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
