"""
Database connection, session factory and store selection.
"""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from reqflow_server.core.config import Settings, get_settings

if TYPE_CHECKING:
    from reqflow_server.stores.base import Store


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    return create_async_engine(database_url, echo=echo, future=True)


def build_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@lru_cache
def get_engine() -> AsyncEngine:
    settings = get_settings()
    return build_engine(settings.database_url, echo=settings.debug)


@lru_cache
def get_session_factory() -> sessionmaker:
    return build_session_factory(get_engine())


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables (development and tests only)."""
    import reqflow_server.models  # noqa: F401  populate metadata

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def build_store(settings: Settings | None = None) -> "Store":
    """Build the configured store backend."""
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        from reqflow_server.stores.memory import MemoryStore

        return MemoryStore()
    from reqflow_server.stores.sql import SqlStore

    return SqlStore(get_session_factory())


def get_store(request: Request) -> "Store":
    """FastAPI dependency: the store attached to the running app."""
    return request.app.state.store
