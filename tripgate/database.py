"""
Database engine and session factory.

Timer rows live in the relational store reached through these async sessions.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from tripgate.config import settings


def create_engine(database_url: str | None = None):
    """Create the async engine for the configured database."""
    url = database_url or settings.DATABASE_URL
    options = {"echo": False, "future": True}
    if not url.startswith("sqlite"):
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **options)


def create_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    """Build a session factory; objects stay readable after commit."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)

