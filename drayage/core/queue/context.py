# drayage/core/queue/context.py
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from drayage.core.models.tasks import Task
from drayage.core.store.sql import GET_STATUS_SQL, SET_PROGRESS_SQL
from drayage.core.types.status import TaskStatus

if TYPE_CHECKING:
    from drayage.core.batch import BatchProcessor
    from drayage.core.consistency import DataConsistencyManager


class TaskContext:
    """Handed to handlers that take a second parameter.

    `session` is the transaction the attempt runs in: writes made through it
    commit together with the task's completion, or not at all.
    Progress is written on a separate connection so it is visible while the
    handler is still running.
    """

    def __init__(
        self,
        task: Task,
        session: AsyncSession,
        *,
        consistency: DataConsistencyManager,
        batch: BatchProcessor,
        worker_id: str | None = None,
    ) -> None:
        self.task = task
        self.session = session
        self.consistency = consistency
        self.batch = batch
        self.worker_id = worker_id
        self.processed_items = 0

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def retry_count(self) -> int:
        return self.task.retry_count

    @property
    def payload(self) -> dict[str, Any]:
        return self.task.payload

    async def report_progress(self, progress: int) -> int:
        """Raise the task's progress to `progress` (0..100). Lower values are ignored."""
        if not 0 <= progress <= 100:
            raise ValueError(f'progress must be within 0..100, got {progress}')
        async with self.consistency.transactions.session_factory() as session:
            result = await session.execute(
                SET_PROGRESS_SQL, {'id': self.task.id, 'progress': progress}
            )
            row = result.fetchone()
            await session.commit()
        if row is not None:
            self.task.progress = row[0]
        return self.task.progress

    async def is_cancelled(self) -> bool:
        async with self.consistency.transactions.session_factory() as session:
            result = await session.execute(GET_STATUS_SQL, {'id': self.task.id})
            row = result.fetchone()
        return row is not None and TaskStatus[row[0]] == TaskStatus.CANCELLED

    async def ensure_once(
        self,
        operation_key: str,
        fn: Callable[[AsyncSession], Awaitable[Any]],
        *,
        transactional: bool = False,
    ) -> Any:
        """Run a side effect at most once across retries of this task.

        The default suits external calls (mail, CDN, webhooks): the marker
        survives a failure of the rest of the attempt. Pass
        `transactional=True` for effects written through the database only.
        """
        return await self.consistency.ensure_once(
            self.task.id, operation_key, fn, transactional=transactional
        )

    def add_processed(self, count: int = 1) -> None:
        self.processed_items += count
