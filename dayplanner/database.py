"""Async database engine and session setup."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from dayplanner.config import settings


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    connect_args={"check_same_thread": False},  # SQLite specific
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """FastAPI dependency that yields a database session."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency for operations that open one session per task."""
    return async_session


async def init_db() -> None:
    """Create all tables (used for first run / dev)."""
    async with engine.begin() as conn:
        # Import models so they register with Base.metadata
        from dayplanner.models import display as _display_models  # noqa: F401
        from dayplanner.models import planning as _planning_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
