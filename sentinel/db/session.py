"""
Async database sessions for the dashboard.

Writes (scan records, token ledger, subscription changes) go to the primary.
History pages, stats and the plan catalog may read from a replica when
``DATABASE_READ_URL`` is set; otherwise both roles share the primary URL.
Engines are created lazily on first use and disposed at shutdown.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sentinel.config import settings
from sentinel.observability.tracing import instrument_sqlalchemy


class EnginePool:
    """One lazily built engine plus its session factory."""

    def __init__(self, role: str) -> None:
        self.role = role
        self.engine: AsyncEngine | None = None
        self.factory: async_sessionmaker[AsyncSession] | None = None

    def _url(self) -> str:
        return settings.database_url if self.role == "write" else settings.read_database_url

    def sessions(self) -> async_sessionmaker[AsyncSession]:
        if self.factory is None:
            self.engine = create_async_engine(
                self._url(),
                pool_size=settings.database_pool_size,
                max_overflow=settings.database_max_overflow,
                pool_timeout=settings.database_pool_timeout,
                pool_recycle=settings.database_pool_recycle,
                pool_pre_ping=True,
                echo=settings.log_level.upper() == "DEBUG",
            )
            instrument_sqlalchemy(self.engine)
            # Rows are read after commit when building response profiles.
            self.factory = async_sessionmaker(self.engine, expire_on_commit=False)
        return self.factory

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.factory = None


primary = EnginePool("write")
replica = EnginePool("read")


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a primary-database session.

    The session is not committed here; services own their transactions.
    """
    async with primary.sessions()() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    async with replica.sessions()() as session:
        yield session


async def close_engines() -> None:
    await primary.dispose()
    await replica.dispose()
