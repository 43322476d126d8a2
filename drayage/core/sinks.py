# drayage/core/sinks.py
"""
Outbound sinks: alert notifications and queue metrics.

Both are fire-and-forget from the queue's point of view. A failing sink is
logged and never changes the outcome of the task that emitted the event.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.logging import get_logger
from drayage.core.models.task_pg import QueueStatisticsModel
from drayage.core.types.errors import Severity

logger = get_logger('sinks')


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@runtime_checkable
class NotificationSink(Protocol):
    async def send(self, severity: Severity, message: str, context: Mapping[str, Any]) -> None: ...


class LoggingNotificationSink:
    """Default sink: alerts become log records at a level matching the severity."""

    def __init__(self) -> None:
        self.logger = get_logger('alerts')

    async def send(self, severity: Severity, message: str, context: Mapping[str, Any]) -> None:
        match severity:
            case Severity.CRITICAL:
                self.logger.critical(f'{message} {dict(context)}')
            case Severity.HIGH:
                self.logger.error(f'{message} {dict(context)}')
            case Severity.MEDIUM:
                self.logger.warning(f'{message} {dict(context)}')
            case _:
                self.logger.info(f'{message} {dict(context)}')


@dataclass(frozen=True)
class Notification:
    severity: Severity
    message: str
    context: Mapping[str, Any] = field(default_factory=lambda: {})


async def notify_safely(
    sink: NotificationSink,
    severity: Severity,
    message: str,
    context: Mapping[str, Any] | None = None,
) -> bool:
    """Send through `sink`; failures are logged, not propagated. Returns delivery success."""
    try:
        await sink.send(severity, message, context or {})
        return True
    except Exception as exc:
        logger.warning(f'Notification sink {type(sink).__name__} failed: {exc}')
        return False


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class MetricEvent(str, Enum):
    ENQUEUE = 'enqueue'
    DEQUEUE = 'dequeue'
    COMPLETE = 'complete'
    FAIL = 'fail'
    RETRY = 'retry'
    # Batch Processor events; queue_name is 'batch:<operation kind>'
    BATCH_ITEMS = 'batch_items'
    BATCH_FAILED_ITEMS = 'batch_failed_items'
    BATCH_CHUNK = 'batch_chunk'


@runtime_checkable
class MetricsSink(Protocol):
    async def increment(self, event: MetricEvent, queue_name: str, value: int = 1) -> None: ...

    async def timing(self, event: MetricEvent, queue_name: str, duration_ms: int) -> None: ...


class AtomicCounter:
    """Thread-safe keyed counter; safe to share between worker loops and threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Counter[tuple[str, ...]] = Counter()

    def add(self, key: tuple[str, ...], value: int = 1) -> int:
        with self._lock:
            self._counts[key] += value
            return self._counts[key]

    def get(self, key: tuple[str, ...]) -> int:
        with self._lock:
            return self._counts[key]

    def snapshot(self) -> dict[tuple[str, ...], int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


class InMemoryMetrics:
    """Process-local counters and timing totals. Lost on restart."""

    def __init__(self) -> None:
        self.counters = AtomicCounter()
        self.timings = AtomicCounter()

    async def increment(self, event: MetricEvent, queue_name: str, value: int = 1) -> None:
        self.counters.add((event.value, queue_name), value)

    async def timing(self, event: MetricEvent, queue_name: str, duration_ms: int) -> None:
        self.timings.add((event.value, queue_name, 'count'))
        self.timings.add((event.value, queue_name, 'total_ms'), duration_ms)

    def count(self, event: MetricEvent, queue_name: str) -> int:
        return self.counters.get((event.value, queue_name))

    def snapshot(self) -> dict[str, int]:
        return {f'{k[0]}.{k[1]}': v for k, v in self.counters.snapshot().items()}


_STAT_COLUMNS: dict[MetricEvent, str] = {
    MetricEvent.ENQUEUE: 'enqueued_count',
    MetricEvent.DEQUEUE: 'dequeued_count',
    MetricEvent.COMPLETE: 'completed_count',
    MetricEvent.FAIL: 'failed_count',
    MetricEvent.RETRY: 'retried_count',
}


class DatabaseMetricsSink:
    """Hourly per-queue counters in drayage_queue_statistics."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    @staticmethod
    def _bucket() -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {'stat_date': now.date(), 'stat_hour': now.hour}

    async def increment(self, event: MetricEvent, queue_name: str, value: int = 1) -> None:
        column = _STAT_COLUMNS.get(event)
        if column is None:
            return
        table = QueueStatisticsModel.__table__
        stmt = pg_insert(table).values(queue_name=queue_name, **{column: value}, **self._bucket())
        stmt = stmt.on_conflict_do_update(
            index_elements=['queue_name', 'stat_date', 'stat_hour'],
            set_={column: table.c[column] + stmt.excluded[column]},
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def timing(self, event: MetricEvent, queue_name: str, duration_ms: int) -> None:
        if event != MetricEvent.COMPLETE:
            return
        table = QueueStatisticsModel.__table__
        stmt = pg_insert(table).values(
            queue_name=queue_name,
            total_duration_ms=duration_ms,
            max_duration_ms=duration_ms,
            **self._bucket(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['queue_name', 'stat_date', 'stat_hour'],
            set_={
                'total_duration_ms': table.c.total_duration_ms + stmt.excluded.total_duration_ms,
                'max_duration_ms': func.greatest(
                    func.coalesce(table.c.max_duration_ms, 0), stmt.excluded.max_duration_ms
                ),
            },
        )
        async with self.session_factory() as session:
            await session.execute(stmt)
            await session.commit()


class CompositeMetricsSink:
    """Fans every event out to several sinks; one failing sink does not block the rest."""

    def __init__(self, sinks: Iterable[MetricsSink]) -> None:
        self.sinks: Sequence[MetricsSink] = list(sinks)

    async def increment(self, event: MetricEvent, queue_name: str, value: int = 1) -> None:
        for sink in self.sinks:
            try:
                await sink.increment(event, queue_name, value)
            except Exception as exc:
                logger.warning(
                    f'Metrics sink {type(sink).__name__} failed on {event.value}: {exc}'
                )

    async def timing(self, event: MetricEvent, queue_name: str, duration_ms: int) -> None:
        for sink in self.sinks:
            try:
                await sink.timing(event, queue_name, duration_ms)
            except Exception as exc:
                logger.warning(
                    f'Metrics sink {type(sink).__name__} failed on {event.value} timing: {exc}'
                )


async def emit_metric(
    sink: MetricsSink | None, event: MetricEvent, queue_name: str, value: int = 1
) -> None:
    """increment() that never raises; metrics must not change task outcomes."""
    if sink is None:
        return
    try:
        await sink.increment(event, queue_name, value)
    except Exception as exc:
        logger.warning(f'Metrics sink {type(sink).__name__} failed on {event.value}: {exc}')


async def emit_timing(
    sink: MetricsSink | None, event: MetricEvent, queue_name: str, duration_ms: int
) -> None:
    if sink is None:
        return
    try:
        await sink.timing(event, queue_name, duration_ms)
    except Exception as exc:
        logger.warning(
            f'Metrics sink {type(sink).__name__} failed on {event.value} timing: {exc}'
        )
