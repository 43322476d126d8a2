# drayage/core/batch.py
"""
Batch Processor: bulk operations in adaptively sized chunks.

- Chunk size starts from the operation kind's base size and shrinks when
  recent chunks of that kind were slow or failed often.
- Each chunk is its own transaction. A failing chunk is rolled back, its
  items are reported as failed, and the next chunk still runs.
- The batch session's identity map is cleared every few chunks.
- When the batch belongs to a task, a CANCELLED status stops it before the
  next chunk.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Sequence, TypeVar

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.logging import get_logger
from drayage.core.models.batch import BatchConfig
from drayage.core.models.task_pg import TaskExecutionLogModel, TaskModel
from drayage.core.sinks import (
    MetricEvent,
    MetricsSink,
    Notification,
    NotificationSink,
    emit_metric,
    emit_timing,
    notify_safely,
)
from drayage.core.transactions import TransactionManager
from drayage.core.types.status import (
    ALLOWED_TRANSITIONS,
    ExecutionStatus,
    TaskStatus,
)

ItemT = TypeVar('ItemT')

type ChunkFn[ItemT] = Callable[[AsyncSession, Sequence[ItemT]], Awaitable[Any]]

# Columns batch_update_status() may set besides status
UPDATABLE_TASK_FIELDS: frozenset[str] = frozenset({
    'error_message',
    'progress',
    'result',
    'scheduled_at',
})

LOG_FIELDS: frozenset[str] = frozenset({
    'task_id',
    'status',
    'attempt',
    'worker_id',
    'started_at',
    'completed_at',
    'duration_ms',
    'memory_used_bytes',
    'processed_items',
    'error',
})


@dataclass
class BatchItemError:
    chunk_index: int
    item_count: int
    error: str

    def to_dict(self) -> dict[str, Any]:
        return {'chunk_index': self.chunk_index, 'item_count': self.item_count, 'error': self.error}


@dataclass
class BatchSummary:
    total_items: int
    success_count: int = 0
    error_count: int = 0
    total_execution_time: float = 0.0
    chunk_count: int = 0
    cancelled: bool = False
    errors: list[BatchItemError] = field(default_factory=lambda: [])

    @property
    def success_rate(self) -> float:
        """Percentage of items in committed chunks."""
        return self.success_count / self.total_items * 100 if self.total_items else 0.0

    @property
    def average_item_time(self) -> float:
        return self.total_execution_time / self.total_items if self.total_items else 0.0

    @property
    def throughput(self) -> float:
        """Items per second."""
        if self.total_execution_time <= 0:
            return 0.0
        return self.total_items / self.total_execution_time

    def to_dict(self) -> dict[str, Any]:
        return {
            'total_items': self.total_items,
            'success_count': self.success_count,
            'error_count': self.error_count,
            'success_rate': round(self.success_rate, 2),
            'total_execution_time': round(self.total_execution_time, 4),
            'average_item_time': round(self.average_item_time, 6),
            'throughput': round(self.throughput, 2),
            'chunk_count': self.chunk_count,
            'cancelled': self.cancelled,
            'errors': [e.to_dict() for e in self.errors],
        }


@dataclass(frozen=True)
class ChunkSample:
    items: int
    seconds: float
    success_rate: float  # percent


class RollingBatchStats:
    """Per-kind window of recent chunk samples, shared safely between threads."""

    def __init__(self, window: int = 1000, trim_to: int = 500) -> None:
        self._lock = threading.Lock()
        self._window = window
        self._trim_to = trim_to
        self._samples: dict[str, deque[ChunkSample]] = {}

    def record(self, kind: str, sample: ChunkSample) -> None:
        with self._lock:
            samples = self._samples.setdefault(kind, deque())
            samples.append(sample)
            if len(samples) >= self._window:
                while len(samples) > self._trim_to:
                    samples.popleft()

    def averages(self, kind: str) -> Optional[tuple[float, float]]:
        """(average chunk seconds, average success rate) for `kind`, None without samples."""
        with self._lock:
            samples = list(self._samples.get(kind, ()))
        if not samples:
            return None
        seconds = sum(s.seconds for s in samples) / len(samples)
        rate = sum(s.success_rate for s in samples) / len(samples)
        return seconds, rate

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            copied = {kind: list(samples) for kind, samples in self._samples.items()}
        operations: dict[str, Any] = {}
        for kind, samples in copied.items():
            if not samples:
                continue
            times = [s.seconds for s in samples]
            operations[kind] = {
                'chunks': len(samples),
                'items': sum(s.items for s in samples),
                'avg_chunk_seconds': sum(times) / len(times),
                'min_chunk_seconds': min(times),
                'max_chunk_seconds': max(times),
                'avg_success_rate': sum(s.success_rate for s in samples) / len(samples),
            }
        all_samples = [s for samples in copied.values() for s in samples]
        return {
            'operations': operations,
            'total_items': sum(s.items for s in all_samples),
            'total_execution_time': sum(s.seconds for s in all_samples),
            'average_batch_size': (
                sum(s.items for s in all_samples) / len(all_samples) if all_samples else 0.0
            ),
            'success_rate': (
                sum(s.success_rate for s in all_samples) / len(all_samples) if all_samples else 0.0
            ),
        }

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()


class BatchProcessor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transactions: TransactionManager,
        *,
        config: Optional[BatchConfig] = None,
        metrics: Optional[MetricsSink] = None,
        stats: Optional[RollingBatchStats] = None,
    ) -> None:
        self.session_factory = session_factory
        self.transactions = transactions
        self.config = config or BatchConfig()
        self.metrics = metrics
        self.stats = stats or RollingBatchStats(self.config.stats_window, self.config.stats_trim)
        self.logger = get_logger('batch')

    def optimal_batch_size(self, n: int, kind: str) -> int:
        """Chunk size for `n` items of operation `kind`, within the kind's [min, max]."""
        if n <= 0:
            return 0
        op = self.config.for_operation(kind)
        size = op.base_size
        averages = self.stats.averages(kind)
        if averages is not None:
            avg_seconds, avg_rate = averages
            if avg_seconds > self.config.slow_chunk_seconds:
                size = int(size * self.config.slow_shrink_factor)
            if avg_rate < self.config.min_success_rate * 100:
                size = int(size * self.config.error_shrink_factor)
        size = min(op.max_size, max(op.min_size, size))
        return min(size, n)

    def suggest_optimizations(self) -> dict[str, dict[str, Any]]:
        """Base sizes the rolling stats argue for, per kind that has samples."""
        suggestions: dict[str, dict[str, Any]] = {}
        for kind, op in self.config.operations.items():
            averages = self.stats.averages(kind)
            if averages is None:
                continue
            avg_seconds, avg_rate = averages
            reasons = []
            size = op.base_size
            if avg_seconds > self.config.slow_chunk_seconds:
                size = int(size * self.config.slow_shrink_factor)
                reasons.append(f'average chunk time {avg_seconds:.2f}s')
            if avg_rate < self.config.min_success_rate * 100:
                size = int(size * self.config.error_shrink_factor)
                reasons.append(f'average success rate {avg_rate:.1f}%')
            size = max(op.min_size, size)
            if size != op.base_size:
                suggestions[kind] = {'old': op.base_size, 'new': size, 'reasons': reasons}
        return suggestions

    def get_stats(self) -> dict[str, Any]:
        return self.stats.snapshot()

    @asynccontextmanager
    async def _batch_session(self) -> AsyncIterator[AsyncSession]:
        # Inside an active unit of work, chunks become savepoints of it
        active = self.transactions.active_session()
        if active is not None:
            yield active
            return
        async with self.session_factory() as session:
            yield session

    async def process_batch(
        self,
        items: Sequence[ItemT],
        kind: str,
        fn: ChunkFn[ItemT],
        task_id: Optional[str] = None,
    ) -> BatchSummary:
        """Run `fn(session, chunk)` over `items`, one transaction per chunk."""
        total = len(items)
        summary = BatchSummary(total_items=total)
        if total == 0:
            return summary

        size = self.optimal_batch_size(total, kind)
        self.logger.info(f"Batch '{kind}' started: {total} items in chunks of {size}")
        batch_started = time.perf_counter()

        async with self._batch_session() as session:
            for index, start in enumerate(range(0, total, size)):
                chunk = items[start:start + size]
                chunk_started = time.perf_counter()
                cancelled = False

                async def _chunk(s: AsyncSession, part: Sequence[ItemT] = chunk) -> bool:
                    if task_id is not None and await self._is_cancelled(s, task_id):
                        return False
                    await fn(s, part)
                    return True

                try:
                    cancelled = not await self.transactions.run(_chunk, session=session)
                    failed = False
                except Exception as exc:
                    failed = True
                    summary.error_count += len(chunk)
                    if len(summary.errors) < self.config.max_reported_errors:
                        summary.errors.append(BatchItemError(index, len(chunk), str(exc)))
                    self.logger.warning(
                        f"Batch '{kind}' chunk {index} ({len(chunk)} items) failed: {exc}"
                    )

                if cancelled:
                    summary.cancelled = True
                    self.logger.info(
                        f"Batch '{kind}' stopped before chunk {index}: task {task_id} was cancelled"
                    )
                    break

                elapsed = time.perf_counter() - chunk_started
                summary.chunk_count += 1
                if not failed:
                    summary.success_count += len(chunk)
                await self._record_chunk(kind, len(chunk), elapsed, failed)

                if summary.chunk_count % self.config.clear_interval_chunks == 0:
                    session.expunge_all()

        summary.total_execution_time = time.perf_counter() - batch_started
        self.logger.info(
            f"Batch '{kind}' finished: {summary.success_count}/{total} items ok, "
            f'{summary.error_count} failed, {summary.chunk_count} chunks, '
            f'{summary.throughput:.1f} items/s'
        )
        return summary

    async def _record_chunk(self, kind: str, items: int, seconds: float, failed: bool) -> None:
        self.stats.record(kind, ChunkSample(items, seconds, 0.0 if failed else 100.0))
        scope = f'batch:{kind}'
        if failed:
            await emit_metric(self.metrics, MetricEvent.BATCH_FAILED_ITEMS, scope, items)
        else:
            await emit_metric(self.metrics, MetricEvent.BATCH_ITEMS, scope, items)
        await emit_timing(self.metrics, MetricEvent.BATCH_CHUNK, scope, int(seconds * 1000))

    @staticmethod
    async def _is_cancelled(session: AsyncSession, task_id: str) -> bool:
        result = await session.execute(select(TaskModel.status).where(TaskModel.id == task_id))
        return result.scalar_one_or_none() == TaskStatus.CANCELLED

    # ------------- Built-in operations -------------

    async def batch_update_status(
        self,
        task_ids: Sequence[str],
        status: TaskStatus,
        fields: Optional[Mapping[str, Any]] = None,
        task_id: Optional[str] = None,
    ) -> BatchSummary:
        """Move many tasks to `status`. Rows whose current status has no edge to it are left alone."""
        values = dict(fields or {})
        unknown = set(values) - UPDATABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f'fields not updatable in bulk: {sorted(unknown)}')

        sources = [old for old, targets in ALLOWED_TRANSITIONS.items() if status in targets]
        if not sources:
            raise ValueError(f'no status can transition to {status.name}')

        now = datetime.now(timezone.utc)
        values['status'] = status
        values['updated_at'] = now
        if status.is_terminal:
            values['completed_at'] = now
        if status == TaskStatus.RUNNING:
            values['started_at'] = now

        async def _apply(session: AsyncSession, ids: Sequence[str]) -> None:
            result = await session.execute(
                update(TaskModel)
                .where(TaskModel.id.in_(list(ids)), TaskModel.status.in_(sources))
                .values(**values)
            )
            skipped = len(ids) - (result.rowcount or 0)
            if skipped:
                self.logger.debug(
                    f'{skipped} task(s) not moved to {status.name}: no legal transition'
                )

        return await self.process_batch(task_ids, 'update_status', _apply, task_id)

    async def batch_create_logs(
        self, entries: Sequence[Mapping[str, Any]], task_id: Optional[str] = None
    ) -> BatchSummary:
        """Insert execution-log rows with one executemany per chunk."""
        rows: list[dict[str, Any]] = []
        for entry in entries:
            unknown = set(entry) - LOG_FIELDS
            if unknown:
                raise ValueError(f'unknown execution log fields: {sorted(unknown)}')
            row = dict(entry)
            status = row.get('status', ExecutionStatus.RUNNING)
            if not isinstance(status, ExecutionStatus):
                status = ExecutionStatus[str(status).upper()]
            row['status'] = status
            row.setdefault('started_at', datetime.now(timezone.utc))
            rows.append(row)

        async def _insert(session: AsyncSession, part: Sequence[dict[str, Any]]) -> None:
            await session.execute(insert(TaskExecutionLogModel), list(part))

        return await self.process_batch(rows, 'create_logs', _insert, task_id)

    async def batch_send_notifications(
        self,
        notifications: Sequence[Notification],
        sink: NotificationSink,
        task_id: Optional[str] = None,
    ) -> BatchSummary:
        """Fan notifications out in chunks; each delivery failure counts against one item."""
        total = len(notifications)
        summary = BatchSummary(total_items=total)
        if total == 0:
            return summary
        size = self.optimal_batch_size(total, 'send_notifications')
        started = time.perf_counter()

        for index, start in enumerate(range(0, total, size)):
            if task_id is not None and await self._task_cancelled(task_id):
                summary.cancelled = True
                break
            chunk = notifications[start:start + size]
            chunk_started = time.perf_counter()
            sent = 0
            for note in chunk:
                if await notify_safely(sink, note.severity, note.message, note.context):
                    sent += 1
            failed = len(chunk) - sent
            summary.chunk_count += 1
            summary.success_count += sent
            summary.error_count += failed
            if failed and len(summary.errors) < self.config.max_reported_errors:
                summary.errors.append(
                    BatchItemError(index, failed, f'{failed} notification(s) not delivered')
                )
            elapsed = time.perf_counter() - chunk_started
            self.stats.record(
                'send_notifications', ChunkSample(len(chunk), elapsed, sent / len(chunk) * 100)
            )

        summary.total_execution_time = time.perf_counter() - started
        self.logger.info(
            f'Sent {summary.success_count}/{total} notifications '
            f'({summary.error_count} failed)'
        )
        return summary

    async def _task_cancelled(self, task_id: str) -> bool:
        async def _read(session: AsyncSession) -> bool:
            return await self._is_cancelled(session, task_id)

        return await self.transactions.run(_read)
