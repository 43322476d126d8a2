"""Integration fixtures: a real Postgres database named by DRAYAGE_TEST_DATABASE_URL."""

from __future__ import annotations

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import text

from drayage.core.app import Drayage
from drayage.core.models.app import AppConfig
from drayage.core.models.queues import QueueConfig
from drayage.core.models.retry import BackoffKind, RetryConfig, RetryStrategy
from drayage.core.models.store import PostgresConfig
from drayage.core.types.errors import ErrorCategory

DB_URL = os.environ.get('DRAYAGE_TEST_DATABASE_URL')

TABLES = (
    'drayage_task_dependencies',
    'drayage_task_execution_log',
    'drayage_idempotency_markers',
    'drayage_distributed_locks',
    'drayage_queue_statistics',
    'drayage_tasks',
)


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    if DB_URL:
        return
    skip = pytest.mark.skip(reason='DRAYAGE_TEST_DATABASE_URL is not set')
    for item in items:
        if 'integration' in item.keywords:
            item.add_marker(skip)


def _instant_retries() -> RetryConfig:
    """Every category retries immediately, so a test can drive attempts back to back."""
    now = RetryStrategy(kind=BackoffKind.FIXED, delay=0, max_delay=0, max_retries=5)
    return RetryConfig(strategies={category: now for category in ErrorCategory}, default=now)


@pytest.fixture
def app_config() -> AppConfig:
    assert DB_URL is not None
    return AppConfig(
        store=PostgresConfig(database_url=DB_URL, pool_size=5),
        queues=QueueConfig(lock_ttl_seconds=30),
        retry=_instant_retries(),
        record_queue_statistics=False,
    )


@pytest_asyncio.fixture
async def app(app_config: AppConfig) -> AsyncGenerator[Drayage, None]:
    """App with a migrated, empty schema."""
    drayage_app = Drayage(app_config)
    await drayage_app.store.ensure_schema_initialized()
    async with drayage_app.store.session_factory() as session:
        await session.execute(text(f'TRUNCATE {", ".join(TABLES)} CASCADE'))
        await session.commit()
    yield drayage_app
    await drayage_app.close()

