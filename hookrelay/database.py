"""
Async database engine and session helpers.

The retry engine never shares a session between concurrent tasks; the
store and activity log open a short-lived session per operation from
AsyncSessionLocal.
"""
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from hookrelay.config import settings


def build_engine(database_url: str = None, **kwargs):
    """Create an async engine. SQLite URLs skip the connection-pool sizing options."""
    url = database_url or settings.DATABASE_URL
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_pre_ping", True)
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 10)
    return create_async_engine(url, echo=settings.DEBUG, **kwargs)


def build_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)

