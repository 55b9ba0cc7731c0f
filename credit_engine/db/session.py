"""
Database Session Management - Lazily created async engines and session factories.

Ledger writes go to the primary; usage analytics and balance reads go to
the replica when DATABASE_READ_URL is set, otherwise to the primary as well.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from credit_engine.config import settings
from credit_engine.observability.tracing import instrument_sqlalchemy

# Keyed by role: "write" (primary) and "read" (replica or primary)
_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _create_engine(url: str) -> AsyncEngine:
    engine = create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        # Dead connections would otherwise surface as ledger faults
        pool_pre_ping=True,
        echo=settings.log_level.upper() == "DEBUG",
    )
    instrument_sqlalchemy(engine)
    return engine


def _engine_for(role: str) -> AsyncEngine:
    if role not in _engines:
        if role == "read" and not settings.database_read_url:
            _engines[role] = _engine_for("write")
        else:
            url = settings.database_url if role == "write" else settings.read_database_url
            _engines[role] = _create_engine(url)
    return _engines[role]


def _factory_for(role: str) -> async_sessionmaker[AsyncSession]:
    if role not in _factories:
        # Domain objects are built from rows after commit
        _factories[role] = async_sessionmaker(_engine_for(role), expire_on_commit=False)
    return _factories[role]


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the primary."""
    return _factory_for("write")


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the replica (primary when none is configured)."""
    return _factory_for("read")


async def close_engines() -> None:
    """Dispose every engine once (the read role may share the write engine)."""
    disposed: set[int] = set()
    for engine in _engines.values():
        if id(engine) not in disposed:
            disposed.add(id(engine))
            await engine.dispose()
    _engines.clear()
    _factories.clear()
