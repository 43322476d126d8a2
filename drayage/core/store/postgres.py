# drayage/core/store/postgres.py
from __future__ import annotations
import hashlib
from typing import Any, Awaitable, Callable, TypeVar
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from drayage.core.logging import get_logger
from drayage.core.models.store import PostgresConfig
from drayage.core.models.task_pg import Base
from drayage.core.utils.loop_runner import LoopRunner
from drayage.core.utils.url import mask_database_url

T = TypeVar('T')

SCHEMA_ADVISORY_LOCK_SQL = text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))')

HEALTH_CHECK_SQL = text('SELECT 1')

# Partial index serving the claim query: only rows a worker may pick up.
CREATE_CLAIMABLE_INDEX_SQL = text("""
    CREATE INDEX IF NOT EXISTS idx_drayage_tasks_claimable
    ON drayage_tasks (queue_name, priority DESC, created_at ASC)
    WHERE status IN ('PENDING', 'RETRYING')
""")


class PostgresStore:
    """
    The shared relational store every component reads and writes through.

    Provides:
      - one async engine and session factory per process
      - idempotent schema bootstrap guarded by an advisory lock
      - a LoopRunner for sync facades (`run_sync`)
    """

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.logger = get_logger('store')

        self.async_engine: AsyncEngine = create_async_engine(
            self.config.database_url, **self.config.engine_options()
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )

        self._initialized = False
        self._loop_runner = LoopRunner()

        self.logger.info(
            f'PostgresStore initialized for {mask_database_url(self.config.database_url)}'
        )

    def _schema_advisory_key(self) -> int:
        """
        Stable 64-bit advisory lock key for schema initialization.

        Derived from the database URL so different clusters never contend
        on the same key.
        """
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'drayage-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            # Serialize DDL across workers and producers starting together
            await conn.execute(
                SCHEMA_ADVISORY_LOCK_SQL, {'key': self._schema_advisory_key()},
            )
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(CREATE_CLAIMABLE_INDEX_SQL)
        self._initialized = True
        self.logger.debug('Schema initialized')

    async def ensure_schema_initialized(self) -> None:
        """
        Public entry point to ensure tables and indexes exist.

        Safe to call multiple times and from multiple processes.
        """
        await self._ensure_initialized()

    async def ping(self) -> None:
        """Round-trip to the database; raises on connectivity problems."""
        async with self.session_factory() as session:
            await session.execute(HEALTH_CHECK_SQL)

    async def close_async(self) -> None:
        await self.async_engine.dispose()

    # ----------------- Sync facades -----------------

    def run_sync(self, coro_fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run an async store operation from blocking code."""
        return self._loop_runner.call(coro_fn, *args, **kwargs)

    def close(self) -> None:
        """Dispose the engine on the runner loop, then stop the runner."""
        try:
            if self._loop_runner.running:
                self._loop_runner.call(self.close_async)
        finally:
            self._loop_runner.stop()
