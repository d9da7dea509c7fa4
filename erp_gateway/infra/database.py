from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from erp_gateway.config.settings import Settings


class Base(DeclarativeBase):
    """Declarative base for the job tables."""


def async_database_url(url: str) -> str:
    """
    Normalize a PostgreSQL URL to the asyncpg driver.

    Hosting platforms hand out ``postgres://`` or driverless
    ``postgresql://`` URLs; both are rewritten to ``postgresql+asyncpg://``.
    Other URLs are returned unchanged.
    """
    url = url.strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    return url


class Database:
    """Engine and session factory for the SQL job store."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.url = async_database_url(settings.database_url)
        self.engine = create_async_engine(
            self.url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
        )
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def ping(self) -> None:
        """Round-trip a trivial query; raises if the database is unreachable."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def create_all(self) -> None:
        """Create tables directly; production schemas come from alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()
