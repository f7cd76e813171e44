"""
Database Session Management

Async SQLAlchemy engine and sessions.

Two kinds of session exist:
- the request unit of work (``get_db``), committed once when the
  handler succeeds and rolled back when it raises
- standalone sessions (``open_session``) used by the audit recorder, so
  audit rows are written whether or not the business transaction commits
"""

import logging
import ssl
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bastion.api.config import settings

logger = logging.getLogger(__name__)

# Module-level engine (created lazily)
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker] = None


def build_engine(url: str, echo: bool = False, require_ssl: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    PostgreSQL gets a pre-pinged pool sized from settings and, when
    ``require_ssl`` is set, a verifying TLS context. Other backends
    (SQLite for tests and local runs) keep SQLAlchemy's defaults.
    """
    backend = make_url(url).get_backend_name()
    options: Dict[str, Any] = {"echo": echo}

    if backend == "postgresql":
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_pre_ping=True,
        )
        if require_ssl:
            options["connect_args"] = {"ssl": ssl.create_default_context()}

    logger.info(f"Creating {backend} engine for {url.split('@')[-1][:60]}")
    return create_async_engine(url, **options)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by request handlers and the audit recorder."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get or create the application engine."""
    global _engine

    if _engine is None:
        _engine = build_engine(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            require_ssl=settings.DATABASE_SSL,
        )
    return _engine


def get_session_maker() -> async_sessionmaker:
    global _async_session_maker

    if _async_session_maker is None:
        _async_session_maker = build_session_maker(get_engine())
    return _async_session_maker


def open_session() -> AsyncSession:
    """Open a standalone session outside the request unit of work."""
    return get_session_maker()()


async def init_db() -> None:
    """Check connectivity and, in DEBUG mode, create missing tables."""
    from bastion.api.db.models import Base

    async with get_engine().begin() as conn:
        if settings.DEBUG:
            logger.info("Creating tables (DEBUG mode)...")
            await conn.run_sync(Base.metadata.create_all)

    logger.info("Database ready")


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        logger.info("Database connection closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides the request's database session.

    The whole request is one unit of work: committed on success, rolled
    back on any exception. Handlers that audit or broadcast a change
    commit it themselves first, so nothing is announced that did not
    land. Access-gate rejections raise before the handler runs, so a
    denied request never commits anything.

    Usage in FastAPI:
        @router.get("/permissions")
        async def list_permissions(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
