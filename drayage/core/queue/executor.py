# drayage/core/queue/executor.py
"""
Runs one claimed task: lock -> execution log -> handler under the
consistency guard -> finalize -> dependents.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from psycopg.types.json import Jsonb
from sqlalchemy import insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from drayage.core.batch import BatchProcessor
from drayage.core.consistency import DataConsistencyManager
from drayage.core.defaults import EXPIRED_TASK_MESSAGE
from drayage.core.errors import LockUnavailableError
from drayage.core.locks import LockService
from drayage.core.logging import get_logger
from drayage.core.models.task_pg import TaskExecutionLogModel
from drayage.core.models.tasks import HandlerOutcome, Task
from drayage.core.queue.context import TaskContext
from drayage.core.queue.dependencies import DependencyResolver
from drayage.core.registry.handlers import HandlerRegistry
from drayage.core.retry.manager import RetryManager
from drayage.core.sinks import MetricEvent, MetricsSink, emit_metric, emit_timing
from drayage.core.store.sql import EXPIRE_TASK_SQL, MARK_COMPLETED_SQL, UNCLAIM_TASK_SQL
from drayage.core.types.status import ExecutionStatus, TaskStatus

# Extra lock lifetime beyond the task's remaining time to expiry
LOCK_TTL_MARGIN_SECONDS = 30
# A task handed back because another holder has its lock waits this long
LOCK_CONTENTION_DELAY_SECONDS = 5.0


def _rss_bytes() -> int:
    import psutil

    return psutil.Process().memory_info().rss


class AttemptOutcome(str, Enum):
    COMPLETED = 'completed'
    RETRYING = 'retrying'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    SKIPPED = 'skipped'  # lock held elsewhere; claim handed back


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.outcome in _FINAL_STATUS


_FINAL_STATUS = {
    AttemptOutcome.COMPLETED: TaskStatus.COMPLETED,
    AttemptOutcome.FAILED: TaskStatus.FAILED,
    AttemptOutcome.CANCELLED: TaskStatus.CANCELLED,
}


class _CancelledWhileRunning(Exception):
    """The task left RUNNING while its handler ran; roll the attempt back."""


class _HandlerExpired(Exception):
    """The handler was still running when the task reached expires_at."""


class TaskExecutor:
    def __init__(
        self,
        *,
        locks: LockService,
        consistency: DataConsistencyManager,
        retry: RetryManager,
        batch: BatchProcessor,
        registry: HandlerRegistry,
        dependencies: DependencyResolver,
        metrics: Optional[MetricsSink] = None,
        worker_id: Optional[str] = None,
        lock_ttl: float = 300,
    ) -> None:
        self.locks = locks
        self.consistency = consistency
        self.retry = retry
        self.batch = batch
        self.registry = registry
        self.dependencies = dependencies
        self.metrics = metrics
        self.worker_id = worker_id or locks.holder_id
        self.lock_ttl = lock_ttl
        self.session_factory = consistency.transactions.session_factory
        self.logger = get_logger('executor')

    def _lock_ttl_for(self, task: Task) -> float:
        remaining = self._seconds_left(task)
        if remaining is None:
            return self.lock_ttl
        return max(self.lock_ttl, remaining + LOCK_TTL_MARGIN_SECONDS)

    @staticmethod
    def _seconds_left(task: Task) -> Optional[float]:
        if task.expires_at is None:
            return None
        return max(0.0, (task.expires_at - datetime.now(timezone.utc)).total_seconds())

    async def execute(self, task: Task) -> AttemptResult:
        """Run a task already claimed (RUNNING) by this worker."""
        key = f'task:{task.id}'
        ttl = self._lock_ttl_for(task)
        async with self.locks.holding(key, ttl) as acquired:
            if not acquired:
                self.logger.info(f'Task {task.id} skipped: lock {key!r} is held elsewhere')
                await self._write_skipped_log(task)
                await self.release_claim(task, LOCK_CONTENTION_DELAY_SECONDS)
                return AttemptResult(AttemptOutcome.SKIPPED)
            attempt = await self._run_attempt(task, ttl)

        if attempt.finished:
            try:
                await self.dependencies.on_task_finished(
                    task.id, _FINAL_STATUS[attempt.outcome]
                )
            except Exception as exc:
                self.logger.error(f'Dependents of task {task.id} not evaluated: {exc}')
        return attempt

    async def _run_attempt(self, task: Task, lock_ttl: float) -> AttemptResult:
        log_id = await self._open_log(task)
        rss_before = await asyncio.to_thread(_rss_bytes)
        started = time.perf_counter()
        processed = 0

        try:
            handler = self.registry[task.task_type]

            async def _unit(session: AsyncSession) -> HandlerOutcome:
                ctx = TaskContext(
                    task,
                    session,
                    consistency=self.consistency,
                    batch=self.batch,
                    worker_id=self.worker_id,
                )
                timeout = self._seconds_left(task)
                try:
                    raw = await asyncio.wait_for(handler.call(task.payload, ctx), timeout)
                except TimeoutError:
                    if timeout is not None and task.is_expired():
                        raise _HandlerExpired() from None
                    raise
                outcome = HandlerOutcome.coerce(raw)
                outcome.processed_items = max(outcome.processed_items, ctx.processed_items)
                result = await session.execute(
                    MARK_COMPLETED_SQL, {'id': task.id, 'result': Jsonb(outcome.result)}
                )
                if result.fetchone() is None:
                    raise _CancelledWhileRunning()
                return outcome

            handled = await self.consistency.execute_with_consistency(
                task.id, _unit, lock_ttl=lock_ttl
            )
            processed = handled.processed_items

        except _CancelledWhileRunning:
            self.logger.info(f'Task {task.id} was cancelled while running; result discarded')
            await self._close_log(log_id, ExecutionStatus.CANCELLED, started, rss_before, processed)
            return AttemptResult(AttemptOutcome.CANCELLED, 'cancelled while running')

        except LockUnavailableError as exc:
            if exc.lock_key != f'consistency:{task.id}':
                # A lock the handler itself asked for: an ordinary failure
                return await self._fail_attempt(task, exc, log_id, started, rss_before, processed)
            self.logger.info(f'Task {task.id} skipped: {exc.message}')
            await self._close_log(log_id, ExecutionStatus.SKIPPED, started, rss_before, processed)
            await self.release_claim(task, LOCK_CONTENTION_DELAY_SECONDS)
            return AttemptResult(AttemptOutcome.SKIPPED, exc.message)

        except _HandlerExpired:
            await self._expire(task)
            await self._close_log(
                log_id,
                ExecutionStatus.FAILED,
                started,
                rss_before,
                processed,
                error={'category': 'system', 'message': EXPIRED_TASK_MESSAGE},
            )
            return AttemptResult(AttemptOutcome.FAILED, EXPIRED_TASK_MESSAGE)

        except Exception as exc:
            return await self._fail_attempt(task, exc, log_id, started, rss_before, processed)

        duration_ms = await self._close_log(
            log_id, ExecutionStatus.COMPLETED, started, rss_before, processed
        )
        self.logger.info(f'Task {task.id} ({task.task_type.value}) completed in {duration_ms}ms')
        await emit_metric(self.metrics, MetricEvent.COMPLETE, task.queue_name)
        await emit_timing(self.metrics, MetricEvent.COMPLETE, task.queue_name, duration_ms)
        return AttemptResult(AttemptOutcome.COMPLETED)

    async def _fail_attempt(
        self,
        task: Task,
        exc: Exception,
        log_id: int,
        started: float,
        rss_before: int,
        processed: int,
    ) -> AttemptResult:
        failure = await self.retry.handle_failure(task, exc)
        message = failure.classification.format_message()
        status = {
            TaskStatus.RETRYING: ExecutionStatus.RETRYING,
            TaskStatus.FAILED: ExecutionStatus.FAILED,
            TaskStatus.CANCELLED: ExecutionStatus.CANCELLED,
        }.get(failure.final_status, ExecutionStatus.FAILED)  # type: ignore[arg-type]
        await self._close_log(
            log_id,
            status,
            started,
            rss_before,
            processed,
            error={**failure.classification.to_dict(), 'retry': failure.plan.to_dict()},
        )
        match failure.final_status:
            case TaskStatus.RETRYING:
                return AttemptResult(AttemptOutcome.RETRYING, message)
            case TaskStatus.CANCELLED:
                return AttemptResult(AttemptOutcome.CANCELLED, message)
            case _:
                return AttemptResult(AttemptOutcome.FAILED, message)

    async def release_claim(self, task: Task, delay_seconds: float = 0.0) -> bool:
        """RUNNING -> PENDING for a claim whose handler did not complete.

        Returns False when the row has moved on (finished, cancelled, or
        claimed again). Errors are logged; expiry eventually reaps the row.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    UNCLAIM_TASK_SQL,
                    {'id': task.id, 'started_at': task.started_at, 'delay': delay_seconds},
                )
                released = result.fetchone() is not None
                await session.commit()
        except Exception as exc:
            self.logger.error(f'Claim of task {task.id} not released: {exc}')
            return False
        if released:
            self.logger.debug(f'Task {task.id} handed back to {task.queue_name!r}')
        return released

    async def _expire(self, task: Task) -> None:
        async with self.session_factory() as session:
            await session.execute(EXPIRE_TASK_SQL, {'id': task.id, 'message': EXPIRED_TASK_MESSAGE})
            await session.commit()
        self.logger.warning(f'Task {task.id} expired while running')
        await emit_metric(self.metrics, MetricEvent.FAIL, task.queue_name)

    # ------------- Execution log -------------

    async def _open_log(self, task: Task) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                insert(TaskExecutionLogModel)
                .values(
                    task_id=task.id,
                    status=ExecutionStatus.RUNNING,
                    attempt=task.retry_count,
                    worker_id=self.worker_id,
                    started_at=datetime.now(timezone.utc),
                )
                .returning(TaskExecutionLogModel.id)
            )
            log_id = result.scalar_one()
            await session.commit()
        return log_id

    async def _close_log(
        self,
        log_id: int,
        status: ExecutionStatus,
        started: float,
        rss_before: int,
        processed: int,
        error: Optional[dict[str, Any]] = None,
    ) -> int:
        duration_ms = int((time.perf_counter() - started) * 1000)
        try:
            rss_after = await asyncio.to_thread(_rss_bytes)
            async with self.session_factory() as session:
                await session.execute(
                    update(TaskExecutionLogModel)
                    .where(TaskExecutionLogModel.id == log_id)
                    .values(
                        status=status,
                        completed_at=datetime.now(timezone.utc),
                        duration_ms=duration_ms,
                        memory_used_bytes=max(0, rss_after - rss_before),
                        processed_items=processed,
                        error=error,
                    )
                )
                await session.commit()
        except Exception as exc:
            # The task row already holds the outcome
            self.logger.error(f'Execution log {log_id} not closed: {exc}')
        return duration_ms

    async def _write_skipped_log(self, task: Task) -> None:
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                await session.execute(
                    insert(TaskExecutionLogModel).values(
                        task_id=task.id,
                        status=ExecutionStatus.SKIPPED,
                        attempt=task.retry_count,
                        worker_id=self.worker_id,
                        started_at=now,
                        completed_at=now,
                        duration_ms=0,
                    )
                )
                await session.commit()
        except Exception as exc:
            self.logger.error(f'Skip of task {task.id} not logged: {exc}')
