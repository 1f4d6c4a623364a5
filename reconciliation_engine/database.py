"""
Reconciliation Engine - Trading Mode Databases.

============================================================
RESPONSIBILITY
============================================================
Owns one SQLAlchemy async engine per trading mode.

- Builds engines from DatabaseConfig
- Hands out sessions per trading mode
- Optionally creates the schema (local / test databases)

============================================================
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .errors import PersistenceError
from .models import Base


logger = logging.getLogger(__name__)


class TradingModeDatabase:
    """
    Connection manager keyed by trading mode.

    Each trading mode is an isolated database.
    """

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._engines: Dict[str, AsyncEngine] = {}
        self._session_factories: Dict[str, async_sessionmaker] = {}
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def trading_modes(self):
        return list(self._engines.keys())

    async def initialize(self) -> None:
        """Create engines for every configured trading mode."""
        if self._initialized:
            return

        for mode, url in self._config.urls.items():
            engine = self._create_engine(url)
            self._engines[mode] = engine
            self._session_factories[mode] = async_sessionmaker(
                engine,
                expire_on_commit=False,
            )

            if self._config.create_schema:
                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)

            logger.info(f"Trading mode database ready: {mode} ({url.split('@')[-1]})")

        self._initialized = True

    def _create_engine(self, url: str) -> AsyncEngine:
        if url.startswith("sqlite"):
            # In-memory SQLite exists per connection; share one.
            return create_async_engine(
                url,
                echo=self._config.echo,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        return create_async_engine(
            url,
            echo=self._config.echo,
            pool_size=self._config.pool_size,
            max_overflow=self._config.max_overflow,
            pool_pre_ping=True,
        )

    @asynccontextmanager
    async def session(self, trading_mode: str) -> AsyncIterator[AsyncSession]:
        """Session bound to a trading mode database."""
        factory: Optional[async_sessionmaker] = self._session_factories.get(trading_mode)
        if factory is None:
            raise PersistenceError(
                f"No database configured for trading mode '{trading_mode}'",
                trading_mode=trading_mode,
            )
        async with factory() as session:
            yield session

    async def close(self) -> None:
        """Dispose all engines."""
        for mode, engine in self._engines.items():
            await engine.dispose()
            logger.debug(f"Disposed engine for trading mode {mode}")
        self._engines.clear()
        self._session_factories.clear()
        self._initialized = False
