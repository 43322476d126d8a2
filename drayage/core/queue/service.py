# drayage/core/queue/service.py
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.defaults import EXPIRED_TASK_MESSAGE
from drayage.core.logging import get_logger
from drayage.core.models.queues import QueueConfig
from drayage.core.models.task_pg import TaskDependencyModel, TaskModel
from drayage.core.models.tasks import (
    ProcessSummary,
    QueueHealth,
    Task,
    TaskProcessError,
)
from drayage.core.queue.dependencies import DependencyResolver
from drayage.core.queue.executor import AttemptOutcome, AttemptResult, TaskExecutor
from drayage.core.queue.routing import determine_queue_name, evaluate_health
from drayage.core.sinks import MetricEvent, MetricsSink, emit_metric
from drayage.core.store.sql import (
    CLAIM_TASKS_SQL,
    EXPIRE_OVERDUE_TASKS_SQL,
    EXPIRE_TASK_SQL,
    PURGE_FINISHED_TASKS_SQL,
    QUEUE_SIZE_SQL,
    RETRY_FAILED_TASKS_SQL,
    RUNNING_AGE_SQL,
    STATUS_COUNTS_SQL,
)
from drayage.core.types.status import DependencyType, TaskStatus, TaskType

type Dependency = tuple[str, DependencyType]


class TaskQueue:
    """
    Routing, claiming and bookkeeping of task rows.

    Claiming is a single UPDATE over a `FOR UPDATE SKIP LOCKED` selection, so
    concurrent workers never receive the same row. Execution of claimed rows
    is delegated to the TaskExecutor.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        executor: TaskExecutor,
        dependencies: DependencyResolver,
        config: Optional[QueueConfig] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        self.session_factory = session_factory
        self.executor = executor
        self.dependencies = dependencies
        self.config = config or QueueConfig()
        self.metrics = metrics
        self.logger = get_logger('queue')

    def determine_queue_name(
        self, priority: int, task_type: TaskType, explicit: Optional[str] = None
    ) -> str:
        return determine_queue_name(priority, task_type, explicit, self.config)

    # ----------------- Enqueue -----------------

    async def enqueue(
        self,
        task: Task,
        queue_name: Optional[str] = None,
        depends_on: Sequence[Dependency] = (),
    ) -> bool:
        """
        Persist `task` as PENDING together with its dependency rows.

        Returns False (and logs) when the insert fails; nothing is persisted then.
        """
        now = datetime.now(timezone.utc)
        task.queue_name = self.determine_queue_name(
            task.priority, task.task_type, queue_name or task.queue_name or None
        )
        task.status = TaskStatus.PENDING
        task.created_at = task.created_at or now
        task.scheduled_at = task.scheduled_at or now
        if task.expires_at is None:
            task.expires_at = task.created_at + timedelta(
                seconds=self.config.default_ttl_seconds
            )

        try:
            async with self.session_factory() as session:
                session.add(
                    TaskModel(
                        id=task.id,
                        task_type=task.task_type,
                        payload=task.payload,
                        priority=task.priority,
                        queue_name=task.queue_name,
                        status=TaskStatus.PENDING,
                        retry_count=task.retry_count,
                        max_retries=task.max_retries,
                        progress=0,
                        created_by=task.created_by,
                        created_at=task.created_at,
                        updated_at=now,
                        expires_at=task.expires_at,
                        scheduled_at=task.scheduled_at,
                    )
                )
                # Dependency rows reference the task row; flush it first
                await session.flush()
                for upstream_id, dependency_type in depends_on:
                    session.add(
                        TaskDependencyModel(
                            task_id=task.id,
                            depends_on_task_id=upstream_id,
                            dependency_type=dependency_type,
                        )
                    )
                await session.commit()
        except Exception as exc:
            self.logger.error(f'Failed to enqueue task {task.id} on {task.queue_name!r}: {exc}')
            return False

        self.logger.debug(
            f'Enqueued task {task.id} ({task.task_type.value}) on {task.queue_name!r} '
            f'priority={task.priority}'
        )
        await emit_metric(self.metrics, MetricEvent.ENQUEUE, task.queue_name)
        return True

    # ----------------- Claim & process -----------------

    async def dequeue(self, queue_name: Optional[str] = None, limit: int = 10) -> list[Task]:
        """Claim up to `limit` eligible tasks of one queue; they come back RUNNING."""
        queue = queue_name or self.config.default_queue
        if limit < 1:
            return []
        async with self.session_factory() as session:
            result = await session.execute(CLAIM_TASKS_SQL, {'queue': queue, 'lim': limit})
            rows = result.mappings().all()
            await session.commit()

        tasks = [Task.from_mapping(row) for row in rows]
        # UPDATE ... RETURNING does not preserve the selection order
        tasks.sort(key=lambda t: (-t.priority, t.created_at, t.id))
        if tasks:
            self.logger.debug(f'Claimed {len(tasks)} task(s) from {queue!r}')
            await emit_metric(self.metrics, MetricEvent.DEQUEUE, queue, len(tasks))
        return tasks

    async def process_queue(
        self,
        queue_name: Optional[str] = None,
        limit: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> ProcessSummary:
        """Claim one batch and run each task in claim order.

        `should_stop` is checked before each task. Claims not run to an
        outcome (stop requested, or this coroutine cancelled) go back to
        PENDING.
        """
        summary = ProcessSummary()
        tasks = await self.dequeue(queue_name, limit or self.config.batch_size)
        unfinished = list(tasks)
        try:
            for task in tasks:
                if should_stop is not None and should_stop():
                    break
                attempt = await self._execute_one(task)
                self._record(summary, task, attempt)
                if not isinstance(attempt, Exception):
                    unfinished.remove(task)
        finally:
            if unfinished:
                await asyncio.shield(self._hand_back(unfinished))

        if tasks:
            self.logger.info(
                f'Processed {queue_name or self.config.default_queue!r}: '
                f'{summary.processed} ok, {summary.failed} failed, {summary.skipped} skipped'
            )
        return summary

    async def _execute_one(self, task: Task) -> AttemptResult | Exception:
        try:
            return await self.executor.execute(task)
        except Exception as exc:
            self.logger.error(f'Task {task.id} could not be executed: {exc}')
            return exc

    async def _hand_back(self, tasks: Sequence[Task]) -> None:
        released = 0
        for task in tasks:
            if await self.executor.release_claim(task):
                released += 1
        self.logger.info(f'Handed {released} of {len(tasks)} unfinished claim(s) back')

    @staticmethod
    def _record(summary: ProcessSummary, task: Task, attempt: AttemptResult | Exception) -> None:
        if isinstance(attempt, Exception):
            summary.failed += 1
            summary.errors.append(TaskProcessError(task.id, str(attempt)))
            return
        match attempt.outcome:
            case AttemptOutcome.COMPLETED:
                summary.processed += 1
            case AttemptOutcome.FAILED | AttemptOutcome.RETRYING:
                summary.failed += 1
                summary.errors.append(
                    TaskProcessError(task.id, attempt.error or attempt.outcome.value)
                )
            case AttemptOutcome.SKIPPED | AttemptOutcome.CANCELLED:
                summary.skipped += 1

    # ----------------- Stats & health -----------------

    async def get_stats(self, queue_name: Optional[str] = None) -> dict[str, int]:
        """Task counts by status; every status is present."""
        counts = await self._status_counts(queue_name)
        return {status.value: counts.get(status, 0) for status in TaskStatus}

    async def _status_counts(self, queue_name: Optional[str]) -> dict[TaskStatus, int]:
        async with self.session_factory() as session:
            result = await session.execute(STATUS_COUNTS_SQL, {'queue': queue_name})
            return {TaskStatus[status]: n for status, n in result.all()}

    async def get_queue_size(self, queue_name: str) -> int:
        async with self.session_factory() as session:
            result = await session.execute(QUEUE_SIZE_SQL, {'queue': queue_name})
            return int(result.scalar_one())

    async def get_health(self, queue_name: Optional[str] = None) -> QueueHealth:
        counts = await self._status_counts(queue_name)
        async with self.session_factory() as session:
            result = await session.execute(
                RUNNING_AGE_SQL,
                {'timeout': self.config.task_timeout_seconds, 'queue': queue_name},
            )
            long_running, stuck = result.one()
        health = evaluate_health(queue_name, counts, int(long_running), int(stuck))
        self.logger.debug(f'Health of {queue_name or "all queues"}: {health.status.value}')
        return health

    # ----------------- Maintenance -----------------

    async def expire_task_if_overdue(self, task_id: str) -> bool:
        """Fail one unfinished task whose expires_at has passed. True when it did."""
        async with self.session_factory() as session:
            result = await session.execute(
                EXPIRE_TASK_SQL, {'id': task_id, 'message': EXPIRED_TASK_MESSAGE}
            )
            row = result.fetchone()
            await session.commit()
        if row is None:
            return False
        self.logger.info(f'Task {task_id} expired')
        await self.dependencies.on_task_finished(task_id, TaskStatus.FAILED)
        return True

    async def cleanup_expired_tasks(self) -> int:
        """Fail every unfinished task past its expires_at; returns how many."""
        async with self.session_factory() as session:
            result = await session.execute(
                EXPIRE_OVERDUE_TASKS_SQL, {'message': EXPIRED_TASK_MESSAGE}
            )
            expired = result.all()
            await session.commit()

        for task_id, queue in expired:
            await emit_metric(self.metrics, MetricEvent.FAIL, queue)
            try:
                await self.dependencies.on_task_finished(task_id, TaskStatus.FAILED)
            except Exception as exc:
                self.logger.error(f'Dependents of expired task {task_id} not evaluated: {exc}')
        if expired:
            self.logger.info(f'Expired {len(expired)} overdue task(s)')
        return len(expired)

    async def retry_failed_tasks(self, queue_name: Optional[str] = None) -> int:
        """Send FAILED tasks with retry budget left back to PENDING (counted as a retry)."""
        async with self.session_factory() as session:
            result = await session.execute(
                RETRY_FAILED_TASKS_SQL,
                {'ttl': self.config.default_ttl_seconds, 'queue': queue_name},
            )
            count = len(result.all())
            await session.commit()
        if count:
            self.logger.info(
                f'Re-queued {count} failed task(s) in {queue_name or "all queues"}'
            )
        return count

    async def purge_finished(self, retention_hours: Optional[int] = None) -> int:
        """Delete terminal tasks older than the retention window."""
        hours = retention_hours or self.config.retention_hours
        if hours is None:
            return 0
        async with self.session_factory() as session:
            result = await session.execute(PURGE_FINISHED_TASKS_SQL, {'hours': hours})
            await session.commit()
        deleted = result.rowcount or 0
        if deleted:
            self.logger.info(f'Purged {deleted} finished task(s) older than {hours}h')
        return deleted
