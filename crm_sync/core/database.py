"""Database connections and utilities."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crm_sync.core.config import get_settings
from crm_sync.models.base import Base

logger = logging.getLogger(__name__)


class Database:
    """Database connection manager."""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        settings = get_settings()
        self.url = url or settings.database_url
        self.echo = settings.database_echo if echo is None else echo
        self.engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker] = None

    async def connect(self, create_tables: bool = True) -> None:
        """Create the engine and, optionally, the schema."""
        try:
            engine_kwargs = {"echo": self.echo}
            if self.url.startswith("sqlite") and ":memory:" in self.url:
                # one shared connection, otherwise every session sees an empty database
                engine_kwargs["poolclass"] = StaticPool
                engine_kwargs["connect_args"] = {"check_same_thread": False}
            else:
                engine_kwargs["pool_pre_ping"] = True

            self.engine = create_async_engine(self.url, **engine_kwargs)
            self._session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            if create_tables:
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)

            logger.info("Connected to database", extra={"database_url": self.url.split("@")[-1]})
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self) -> None:
        """Dispose of the engine."""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self._session_maker = None
            logger.info("Disconnected from database")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session bound to the engine."""
        if self._session_maker is None:
            raise RuntimeError("Database not connected")
        async with self._session_maker() as session:
            yield session

    async def ping(self) -> bool:
        """Run a trivial query against the database."""
        if self.engine is None:
            return False
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
