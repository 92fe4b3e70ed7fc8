from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from nuggets.config import Settings, get_settings
from nuggets.db.models.base import Base


def _get_async_url(url: str) -> str:
    """Convert sync database URLs to their async driver equivalents."""
    if url.startswith("postgresql+asyncpg://") or url.startswith("sqlite+aiosqlite://"):
        return url
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Database:
    """
    Explicitly constructed database handle.

    The engine is created lazily on first use; ``dispose()`` releases the
    pool. Usable as an async context manager so tests and scripts can build
    isolated instances.
    """

    def __init__(self, url: str | None = None, echo: bool | None = None, settings: Settings | None = None):
        settings = settings or get_settings()
        self.url = _get_async_url(url or settings.database_url)
        self.echo = settings.database_echo if echo is None else echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Get or create async engine (lazy initialization)."""
        if self._engine is None:
            kwargs = {"echo": self.echo}
            if not self.url.startswith("sqlite"):
                kwargs["pool_pre_ping"] = True
            self._engine = create_async_engine(self.url, **kwargs)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create async session factory."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide an async transactional scope around a series of operations."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:  # Intentionally broad - rollback on any error before re-raising
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create all tables that do not exist yet."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.warning("Database tables dropped")

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    async def __aenter__(self) -> Database:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()
