"""Database connection and session management."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from swapresolver.ledger.models import Base

logger = logging.getLogger(__name__)


def normalize_database_url(url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:/// if needed."""
    if url.startswith("sqlite:///") and "aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return url


class Database:
    """Owns the async engine and session factory for one resolver process.

    Sessions are handed out one at a time: the coordinator is the single
    writer, and concurrent per-chain work must not interleave transactions
    on the same SQLite file.
    """

    def __init__(self, url: str, echo: bool = False, engine: Optional[AsyncEngine] = None):
        self.url = normalize_database_url(url)
        if engine is None:
            kwargs = {"echo": echo, "future": True}
            if ":memory:" in self.url:
                # One shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"] = {"check_same_thread": False}
            engine = create_async_engine(self.url, **kwargs)
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session that commits on success and rolls back on error."""
        async with self._write_lock:
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

    async def init(self) -> None:
        """Create all tables."""
        if self.url.startswith("sqlite+aiosqlite:///") and ":memory:" not in self.url:
            db_path = Path(self.url.removeprefix("sqlite+aiosqlite:///"))
            db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized: {self.url}")

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()
