from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from config.settings import Settings

# Create declarative base for models
Base = declarative_base()


def resolve_database_url(settings: Settings) -> str:
    """
    Pick the async database URL for the given settings.

    Production deployments must point DATABASE_URL at PostgreSQL; SQLite is only
    used for local development and tests.
    """
    url = settings.database_url or "sqlite+aiosqlite:///./nutriapp.db"
    if settings.is_production:
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL must be set in production. SQLite is not allowed in production.")
        if "sqlite" in url.lower():
            raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")

    # Render hands out postgres:// URLs; the async engine needs asyncpg
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for(url: str) -> AsyncEngine:
    """Create an async engine. In-memory SQLite shares one connection across sessions."""
    if url.startswith("sqlite") and ":memory:" in url:
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url, echo=False, pool_pre_ping=not url.startswith("sqlite"))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine):
    """
    Initialize the database by creating all tables.
    This should be called on application startup.
    """
    async with engine.begin() as conn:
        # Import models here to ensure they're registered with Base
        import database_models  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function that yields a database session from the application context.

    Example:
        @router.get("/diary")
        async def list_entries(db: AsyncSession = Depends(get_db)):
            ...
    """
    context = request.app.state.context
    async with context.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
