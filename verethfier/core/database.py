"""Engines and sessions for the verification store and the asset index.

The verification store (rules, assignments, wallets) is read and written
through ``session_scope``; the asset index is only ever read by the
ownership oracle, which owns its own engine built with ``build_engine``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from verethfier.core.config import get_settings

# Built lazily from settings; Celery workers drop them per task with reset_engine()
_store_engine: AsyncEngine | None = None
_store_sessions: async_sessionmaker[AsyncSession] | None = None


def build_engine(
    url: str,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 0,
) -> AsyncEngine:
    if url.startswith("sqlite"):
        # aiosqlite in tests and local runs; it has no connection pool to size
        return create_async_engine(url, echo=echo)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def get_engine() -> AsyncEngine:
    """Engine for the verification store."""
    global _store_engine
    if _store_engine is None:
        settings = get_settings()
        _store_engine = build_engine(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    return _store_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _store_sessions
    if _store_sessions is None:
        _store_sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _store_sessions


def reset_engine() -> None:
    """Forget the store engine; each Celery task runs on a fresh event loop."""
    global _store_engine, _store_sessions
    _store_engine = None
    _store_sessions = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for request-scoped sessions."""
    async with session_scope() as session:
        yield session


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """One transaction: committed on success, rolled back when the block raises."""
    async with (factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
