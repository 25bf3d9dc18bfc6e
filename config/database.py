"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses the asyncpg driver for PostgreSQL in production.
"""

from typing import AsyncGenerator

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import settings
from shared.exceptions import StoreUnavailable


def _engine_options() -> dict:
    options = {
        "pool_pre_ping": True,       # Detect stale connections
        "echo": settings.DEBUG,      # Log SQL in debug mode
    }
    if not settings.DATABASE_URL.startswith("sqlite"):
        options.update(
            pool_size=settings.DATABASE_POOL_SIZE,
            max_overflow=settings.DATABASE_MAX_OVERFLOW,
            pool_timeout=settings.DATABASE_POOL_TIMEOUT,
            pool_recycle=3600,
        )
    return options


# ── Engine ────────────────────────────────────────────────────
engine = create_async_engine(settings.DATABASE_URL, **_engine_options())

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autoflush=False,
)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session.
    Auto-commits on success, rolls back on error.
    Connection-level failures surface as StoreUnavailable.

    Usage:
        @router.get("/bookings")
        async def list_bookings(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except (OperationalError, DBAPIError) as exc:
            await session.rollback()
            raise StoreUnavailable("Database is unavailable", {"error": str(exc)}) from exc
        except Exception:
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """
    FastAPI dependency for callers that need several independent sessions,
    e.g. concurrent geohash range queries (one AsyncSession cannot run
    queries concurrently).
    """
    return AsyncSessionLocal


async def init_db() -> None:
    """Create all tables. Run during app startup."""
    import shared.models.models  # noqa: F401  registers mappers on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()
