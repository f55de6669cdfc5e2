"""
Async SQLAlchemy engine and session factory for the progress store.

The lesson pipeline only reads recent scores, so the engine is created
lazily on first use rather than at import time.  Any async SQLAlchemy URL
works; production uses ``postgresql+asyncpg://``, tests use
``sqlite+aiosqlite://``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Declarative base (shared by all ORM models)
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""


# ---------------------------------------------------------------------------
# Engine configuration
# ---------------------------------------------------------------------------


def normalise_database_url(url: str) -> str:
    """Rewrite a plain ``postgresql://`` URL to use the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine; pool sizing is only applied to server databases."""
    url = normalise_database_url(url)
    options: dict[str, Any] = {
        "echo": os.getenv("SQL_ECHO", "false").lower() == "true",
    }
    if not url.startswith("sqlite"):
        options.update(pool_size=5, max_overflow=10, pool_recycle=3600, pool_pre_ping=True)
    return create_async_engine(url, **options)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory, creating the engine on first call."""
    global _engine, _sessionmaker
    if _sessionmaker is None:
        from lesson_engine.config import get_settings  # local to avoid circular import

        _engine = build_engine(get_settings().database_url)
        _sessionmaker = build_sessionmaker(_engine)
    return _sessionmaker


# ---------------------------------------------------------------------------
# Startup / shutdown helpers (call from FastAPI lifespan)
# ---------------------------------------------------------------------------


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables declared on ``Base`` metadata (tests and local runs)."""
    import lesson_engine.models  # noqa: F401  registers the models on Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the shared engine, if one was created."""
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None


async def check_db_connection(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> dict[str, Any]:
    """Probe the database and return a health-status dict.

    Returns:
        dict with key ``"status"`` set to ``"ok"`` or ``"error"``.
        On error, ``"detail"`` contains the exception message.
    """
    factory = session_factory or get_sessionmaker()
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:  # noqa: BLE001
        logger.warning("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}


__all__: list[str] = [
    "Base",
    "build_engine",
    "build_sessionmaker",
    "get_sessionmaker",
    "init_db",
    "dispose_engine",
    "check_db_connection",
]
