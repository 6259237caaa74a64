"""Async SQLAlchemy engine, session factory, and FastAPI dependency."""

from collections.abc import AsyncGenerator

from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from security_manager.config import get_settings


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend."""
    engine_kwargs: dict = {"echo": echo}
    if database_url.startswith("postgresql"):
        engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)
    elif "sqlite" in database_url:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if database_url.endswith("://") or ":memory:" in database_url:
            # StaticPool ensures all connections share the same in-memory database
            engine_kwargs["poolclass"] = StaticPool
    return create_async_engine(database_url, **engine_kwargs)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()

engine = build_engine(settings.database_url, echo=False)

async_session_factory = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async DB session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
