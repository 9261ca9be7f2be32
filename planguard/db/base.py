"""Declarative base, naming convention and the process-wide engine/session factory."""

import structlog
from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from planguard.core.config import get_settings

logger = structlog.get_logger(__name__)

# Stable constraint names so unique constraints can be referenced by name
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used by every service; objects stay readable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(url: str | None = None, create_tables: bool = True) -> None:
    """Create the shared engine and session factory.

    Args:
        url: Database URL (defaults to settings.database_url)
        create_tables: Run create_all for every model; pass False when the
            schema is managed by migrations
    """
    global _engine, _session_factory

    if _engine is not None:
        return

    settings = get_settings()
    db_url = make_url(url or settings.database_url)

    options = {"echo": settings.debug}
    if db_url.get_backend_name() != "sqlite":
        options["pool_pre_ping"] = True

    _engine = create_async_engine(db_url, **options)
    _session_factory = make_session_factory(_engine)

    # Populate metadata before create_all
    import planguard.db.models  # noqa: F401

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    logger.info(
        "database_initialized",
        backend=db_url.get_backend_name(),
        database=db_url.database,
        create_tables=create_tables,
    )


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the shared session factory. Raises RuntimeError before init_db()."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
