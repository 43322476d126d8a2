# drayage/core/tasks.py
"""
Public task API: create, cancel, retry, inspect and wire dependencies.

Every method has a blocking `*_sync` twin that runs the coroutine on the
store's background loop, for callers outside asyncio (request handlers,
management scripts).
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import func, insert, select
from sqlalchemy.exc import IntegrityError

from drayage.core import defaults
from drayage.core.errors import (
    ErrorCode,
    TaskEnqueueError,
    TaskNotFoundError,
    TaskValidationError,
)
from drayage.core.logging import get_logger
from drayage.core.models.task_pg import TaskDependencyModel, TaskExecutionLogModel, TaskModel
from drayage.core.models.tasks import Task, TaskFilters, TaskPage
from drayage.core.queue.dependencies import DependencyResolver
from drayage.core.queue.service import TaskQueue
from drayage.core.retry.manager import RetryManager
from drayage.core.store.postgres import PostgresStore
from drayage.core.store.sql import CANCEL_TASK_SQL, DEPENDENCY_CYCLE_SQL
from drayage.core.types.status import DependencyType, ExecutionStatus, TaskStatus, TaskType

MAX_PAGE_SIZE = 100

type DependencySpec = str | tuple[str, DependencyType | str]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _coerce_task_type(value: TaskType | str) -> TaskType:
    if isinstance(value, TaskType):
        return value
    if isinstance(value, str):
        try:
            return TaskType(value.lower())
        except ValueError:
            pass
        try:
            return TaskType[value.upper()]
        except KeyError:
            pass
    raise TaskValidationError(
        message=f'invalid task type: {value!r}',
        code=ErrorCode.TASK_INVALID_TYPE,
        notes=[f'known types: {", ".join(t.value for t in TaskType)}'],
    )


def _coerce_dependency_type(value: DependencyType | str) -> DependencyType:
    if isinstance(value, DependencyType):
        return value
    try:
        return DependencyType(str(value).lower())
    except ValueError:
        raise TaskValidationError(
            message=f'invalid dependency type: {value!r}',
            code=ErrorCode.TASK_INVALID_DEPENDENCY,
            notes=[f'known types: {", ".join(t.value for t in DependencyType)}'],
        ) from None


def _normalize_dependencies(
    depends_on: Optional[Iterable[DependencySpec]],
) -> list[tuple[str, DependencyType]]:
    """Bare ids default to SUCCESS dependencies; duplicates keep the first type."""
    normalized: dict[str, DependencyType] = {}
    for item in depends_on or ():
        if isinstance(item, str):
            upstream_id, dependency_type = item, DependencyType.SUCCESS
        else:
            upstream_id, raw_type = item
            dependency_type = _coerce_dependency_type(raw_type)
        normalized.setdefault(upstream_id, dependency_type)
    return list(normalized.items())


class TaskManager:
    def __init__(
        self,
        store: PostgresStore,
        *,
        queue: TaskQueue,
        retry: RetryManager,
        dependencies: DependencyResolver,
    ) -> None:
        self.store = store
        self.session_factory = store.session_factory
        self.queue = queue
        self.retry = retry
        self.dependencies = dependencies
        self.logger = get_logger('tasks')

    # ----------------- Create -----------------

    async def create_task(
        self,
        task_type: TaskType | str,
        payload: Optional[dict[str, Any]] = None,
        queue_name: Optional[str] = None,
        priority: int = defaults.DEFAULT_PRIORITY,
        max_retries: int = defaults.DEFAULT_MAX_RETRIES,
        expires_at: Optional[datetime] = None,
        created_by: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        depends_on: Optional[Iterable[DependencySpec]] = None,
    ) -> str:
        """
        Validate and enqueue a new task. Returns its id.

        Raises:
            TaskValidationError: unknown type, priority outside 1..10, negative
                max_retries, non-dict payload or a missing dependency.
            TaskEnqueueError: the task could not be persisted.
        """
        kind = _coerce_task_type(task_type)
        if (
            isinstance(priority, bool)
            or not isinstance(priority, int)
            or not defaults.MIN_PRIORITY <= priority <= defaults.MAX_PRIORITY
        ):
            raise TaskValidationError(
                message=f'priority must be between {defaults.MIN_PRIORITY} and {defaults.MAX_PRIORITY}',
                code=ErrorCode.TASK_INVALID_PRIORITY,
                notes=[f'got: {priority!r}'],
            )
        if max_retries < 0:
            raise TaskValidationError(
                message='max_retries must be >= 0',
                code=ErrorCode.TASK_INVALID_OPTIONS,
                notes=[f'got: {max_retries}'],
            )
        if payload is not None and not isinstance(payload, dict):
            raise TaskValidationError(
                message='payload must be a JSON object',
                code=ErrorCode.TASK_INVALID_OPTIONS,
                notes=[f'got: {type(payload).__name__}'],
            )
        now = datetime.now(timezone.utc)
        expires_at = _as_utc(expires_at)
        scheduled_at = _as_utc(scheduled_at)
        if expires_at is not None and expires_at <= now:
            raise TaskValidationError(
                message='expires_at must be in the future',
                code=ErrorCode.TASK_INVALID_OPTIONS,
                notes=[f'got: {expires_at.isoformat()}'],
            )

        dependencies = _normalize_dependencies(depends_on)
        if dependencies:
            await self._require_tasks([upstream_id for upstream_id, _ in dependencies])

        task = Task(
            id=str(uuid.uuid4()),
            task_type=kind,
            payload=dict(payload or {}),
            priority=priority,
            queue_name=queue_name or '',
            status=TaskStatus.PENDING,
            retry_count=0,
            max_retries=max_retries,
            created_by=created_by,
            created_at=now,
            expires_at=expires_at,
            scheduled_at=scheduled_at,
        )
        if not await self.queue.enqueue(task, queue_name, depends_on=dependencies):
            raise TaskEnqueueError(
                message='failed to persist task',
                code=ErrorCode.TASK_ENQUEUE_FAILED,
                task_id=task.id,
                help_text='check database connectivity; details are in the drayage.queue log',
            )

        self.logger.info(
            f'Task {task.id} created: type={kind.value} queue={task.queue_name} '
            f'priority={priority} created_by={created_by}'
        )
        if dependencies:
            await self.dependencies.check_new_task(task.id)
        return task.id

    async def _require_tasks(self, task_ids: list[str]) -> None:
        async with self.session_factory() as session:
            result = await session.execute(select(TaskModel.id).where(TaskModel.id.in_(task_ids)))
            found = set(result.scalars().all())
        missing = [task_id for task_id in task_ids if task_id not in found]
        if missing:
            raise TaskValidationError(
                message='dependency refers to an unknown task',
                code=ErrorCode.TASK_INVALID_DEPENDENCY,
                notes=[f'missing: {", ".join(missing)}'],
            )

    # ----------------- Dependencies -----------------

    async def add_dependency(
        self,
        task_id: str,
        depends_on: str,
        dependency_type: DependencyType | str = DependencyType.SUCCESS,
    ) -> None:
        """Make PENDING task `task_id` wait on `depends_on`."""
        kind = _coerce_dependency_type(dependency_type)
        if task_id == depends_on:
            raise TaskValidationError(
                message='a task cannot depend on itself',
                code=ErrorCode.TASK_INVALID_DEPENDENCY,
                notes=[f'task_id: {task_id}'],
            )
        await self._require_tasks([task_id, depends_on])

        async with self.session_factory() as session:
            status = (
                await session.execute(select(TaskModel.status).where(TaskModel.id == task_id))
            ).scalar_one()
            if status != TaskStatus.PENDING:
                raise TaskValidationError(
                    message='dependencies can only be added to PENDING tasks',
                    code=ErrorCode.TASK_INVALID_DEPENDENCY,
                    notes=[f'task {task_id} is {status.name}'],
                )
            creates_cycle = (
                await session.execute(
                    DEPENDENCY_CYCLE_SQL, {'task_id': task_id, 'depends_on': depends_on}
                )
            ).scalar_one()
            if creates_cycle:
                raise TaskValidationError(
                    message='dependency would create a cycle',
                    code=ErrorCode.TASK_INVALID_DEPENDENCY,
                    notes=[f'{task_id} is already upstream of {depends_on}'],
                )
            try:
                await session.execute(
                    insert(TaskDependencyModel).values(
                        task_id=task_id,
                        depends_on_task_id=depends_on,
                        dependency_type=kind,
                    )
                )
                await session.commit()
            except IntegrityError:
                raise TaskValidationError(
                    message='dependency already exists',
                    code=ErrorCode.TASK_INVALID_DEPENDENCY,
                    notes=[f'{task_id} -> {depends_on}'],
                ) from None

        self.logger.info(f'Task {task_id} now depends on {depends_on} ({kind.value})')
        await self.dependencies.check_new_task(task_id)

    # ----------------- Cancel / retry -----------------

    async def cancel_task(self, task_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel an unfinished task. False for unknown or finished tasks.

        A RUNNING task keeps running to its next checkpoint; its late outcome is
        discarded at finalize.
        """
        if await self.queue.expire_task_if_overdue(task_id):
            return False
        message = reason or 'Cancelled by request'
        async with self.session_factory() as session:
            row = (
                await session.execute(CANCEL_TASK_SQL, {'id': task_id, 'reason': message})
            ).fetchone()
            if row is None:
                await session.rollback()
                return False
            now = datetime.now(timezone.utc)
            attempt = (
                await session.execute(
                    select(func.count())
                    .select_from(TaskExecutionLogModel)
                    .where(TaskExecutionLogModel.task_id == task_id)
                )
            ).scalar_one()
            await session.execute(
                insert(TaskExecutionLogModel).values(
                    task_id=task_id,
                    status=ExecutionStatus.CANCELLED,
                    attempt=attempt,
                    started_at=now,
                    completed_at=now,
                    duration_ms=0,
                    error={'reason': message},
                )
            )
            await session.commit()

        self.logger.info(f'Task {task_id} cancelled: {message}')
        await self.dependencies.on_task_finished(task_id, TaskStatus.CANCELLED)
        return True

    async def retry_task(self, task_id: str, reset_retry_count: bool = False) -> bool:
        """Put a FAILED or CANCELLED task back to PENDING. False otherwise."""
        return await self.retry.manual_retry(task_id, reset_retry_count=reset_retry_count)

    # ----------------- Read -----------------

    async def get_task_status(self, task_id: str) -> Optional[Task]:
        """Current task row, after failing it lazily if it is past expires_at."""
        await self.queue.expire_task_if_overdue(task_id)
        async with self.session_factory() as session:
            row = await session.get(TaskModel, task_id)
            return Task.from_model(row) if row is not None else None

    async def require_task(self, task_id: str) -> Task:
        task = await self.get_task_status(task_id)
        if task is None:
            raise TaskNotFoundError(
                message=f'task {task_id} not found',
                code=ErrorCode.TASK_NOT_FOUND,
                task_id=task_id,
            )
        return task

    async def list_tasks(
        self,
        filters: Optional[TaskFilters] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> TaskPage:
        """Newest first. `limit` is clamped to 1..100.

        Overdue tasks are failed first, so the page never shows a stale status.
        """
        filters = filters or TaskFilters()
        await self.queue.cleanup_expired_tasks()
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        conditions = []
        if filters.status is not None:
            conditions.append(TaskModel.status == filters.status)
        if filters.task_type is not None:
            conditions.append(TaskModel.task_type == filters.task_type)
        if filters.queue_name is not None:
            conditions.append(TaskModel.queue_name == filters.queue_name)
        if filters.created_by is not None:
            conditions.append(TaskModel.created_by == filters.created_by)

        async with self.session_factory() as session:
            total = (
                await session.execute(
                    select(func.count()).select_from(TaskModel).where(*conditions)
                )
            ).scalar_one()
            rows = (
                await session.execute(
                    select(TaskModel)
                    .where(*conditions)
                    .order_by(TaskModel.created_at.desc(), TaskModel.id)
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()

        return TaskPage(
            items=[Task.from_model(row) for row in rows],
            total=int(total),
            limit=limit,
            offset=offset,
        )

    async def get_execution_history(self, task_id: str) -> list[dict[str, Any]]:
        """Execution log rows of one task, oldest first."""
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    select(TaskExecutionLogModel)
                    .where(TaskExecutionLogModel.task_id == task_id)
                    .order_by(TaskExecutionLogModel.id)
                )
            ).scalars().all()
        return [
            {
                'attempt': row.attempt,
                'status': row.status.value,
                'worker_id': row.worker_id,
                'started_at': row.started_at.isoformat(),
                'completed_at': row.completed_at.isoformat() if row.completed_at else None,
                'duration_ms': row.duration_ms,
                'memory_used_bytes': row.memory_used_bytes,
                'processed_items': row.processed_items,
                'error': row.error,
            }
            for row in rows
        ]

    async def get_batch_status(self, task_ids: Iterable[str]) -> dict[str, Optional[Task]]:
        """Current row of each id (None for unknown ids), after lazy expiry."""
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return {}
        await self.queue.cleanup_expired_tasks()
        async with self.session_factory() as session:
            rows = (
                await session.execute(select(TaskModel).where(TaskModel.id.in_(ids)))
            ).scalars().all()
        found = {row.id: Task.from_model(row) for row in rows}
        return {task_id: found.get(task_id) for task_id in ids}

    async def get_task_statistics(self, queue_name: Optional[str] = None) -> dict[str, int]:
        return await self.queue.get_stats(queue_name)

    async def get_status_statistics(self, queue_name: Optional[str] = None) -> dict[str, Any]:
        """Count and share (percent, 2 decimals) of every status."""
        counts = await self.queue.get_stats(queue_name)
        total = sum(counts.values())
        return {
            'queue_name': queue_name,
            'total': total,
            'by_status': {
                status: {
                    'count': count,
                    'percentage': round(count * 100 / total, 2) if total else 0.0,
                }
                for status, count in counts.items()
            },
        }

    # ----------------- Sync facades -----------------

    def create_task_sync(
        self,
        task_type: TaskType | str,
        payload: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> str:
        return self.store.run_sync(self.create_task, task_type, payload, **kwargs)

    def cancel_task_sync(self, task_id: str, reason: Optional[str] = None) -> bool:
        return self.store.run_sync(self.cancel_task, task_id, reason)

    def retry_task_sync(self, task_id: str, reset_retry_count: bool = False) -> bool:
        return self.store.run_sync(self.retry_task, task_id, reset_retry_count)

    def get_task_status_sync(self, task_id: str) -> Optional[Task]:
        return self.store.run_sync(self.get_task_status, task_id)

    def list_tasks_sync(
        self, filters: Optional[TaskFilters] = None, limit: int = 20, offset: int = 0
    ) -> TaskPage:
        return self.store.run_sync(self.list_tasks, filters, limit, offset)

    def get_batch_status_sync(self, task_ids: Iterable[str]) -> dict[str, Optional[Task]]:
        return self.store.run_sync(self.get_batch_status, list(task_ids))

    def add_dependency_sync(
        self,
        task_id: str,
        depends_on: str,
        dependency_type: DependencyType | str = DependencyType.SUCCESS,
    ) -> None:
        self.store.run_sync(self.add_dependency, task_id, depends_on, dependency_type)
