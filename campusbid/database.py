"""
CampusBid Escrow — Async Database Engine & Session
Uses SQLAlchemy 2.0 async with asyncpg driver (aiosqlite for local tests).
"""
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from campusbid.config import get_settings

settings = get_settings()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite URLs skip the connection-pool sizing."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, poolclass=NullPool)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Async Engine ──
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# ── Session Factory ──
async_session = build_session_factory(engine)


# ── Declarative Base ──
class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


async def create_tables(bind: AsyncEngine) -> None:
    """Create all tables (safe if they already exist)."""
    # Ensure models are imported so Base.metadata knows about them
    import campusbid.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
