"""Unit tests for TaskQueue enqueue, claiming, processing and maintenance."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from drayage.core.defaults import EXPIRED_TASK_MESSAGE
from drayage.core.models.queues import QueueConfig
from drayage.core.models.task_pg import TaskDependencyModel, TaskModel
from drayage.core.models.tasks import HealthStatus, Task
from drayage.core.queue.executor import AttemptOutcome, AttemptResult
from drayage.core.queue.service import TaskQueue
from drayage.core.sinks import InMemoryMetrics, MetricEvent
from drayage.core.store.sql import CLAIM_TASKS_SQL, RETRY_FAILED_TASKS_SQL
from drayage.core.types.status import DependencyType, TaskStatus, TaskType
from tests.helpers.fakes import mock_session_factory, result

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _task(task_id: str = 'task-1', priority: int = 5, **overrides: Any) -> Task:
    fields: dict[str, Any] = dict(
        id=task_id,
        task_type=TaskType.SYNC,
        payload={'article_id': 7},
        priority=priority,
        queue_name='',
        status=TaskStatus.PENDING,
        retry_count=0,
        max_retries=3,
    )
    fields.update(overrides)
    return Task(**fields)


def _claimed_row(task_id: str, priority: int, created_at: datetime) -> dict[str, Any]:
    return {
        'id': task_id,
        'task_type': 'SYNC',
        'payload': {'article_id': 7},
        'priority': priority,
        'queue_name': 'sync',
        'status': 'RUNNING',
        'retry_count': 0,
        'max_retries': 3,
        'created_at': created_at,
    }


def _queue(
    factory: MagicMock, executor: Any = None, **config: Any
) -> tuple[TaskQueue, InMemoryMetrics, AsyncMock]:
    metrics = InMemoryMetrics()
    dependencies = AsyncMock()
    queue = TaskQueue(
        factory,
        executor=executor or AsyncMock(),
        dependencies=dependencies,
        config=QueueConfig(**config),
        metrics=metrics,
    )
    return queue, metrics, dependencies


@pytest.mark.unit
class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_routes_and_persists(self) -> None:
        factory, session = mock_session_factory()
        queue, metrics, _ = _queue(factory)
        task = _task(priority=9)

        assert await queue.enqueue(task) is True

        assert task.queue_name == 'high_priority'
        assert task.status == TaskStatus.PENDING
        assert task.expires_at == task.created_at + timedelta(seconds=3600)
        model = session.add.call_args_list[0].args[0]
        assert isinstance(model, TaskModel)
        assert model.queue_name == 'high_priority'
        session.commit.assert_awaited_once()
        assert metrics.count(MetricEvent.ENQUEUE, 'high_priority') == 1

    @pytest.mark.asyncio
    async def test_explicit_queue_and_expiry_kept(self) -> None:
        factory, _ = mock_session_factory()
        queue, _, _ = _queue(factory)
        expires = T0 + timedelta(minutes=5)
        task = _task(expires_at=expires, created_at=T0)

        await queue.enqueue(task, queue_name='editorial')

        assert task.queue_name == 'editorial'
        assert task.expires_at == expires
        assert task.scheduled_at == T0

    @pytest.mark.asyncio
    async def test_dependency_rows_added_after_flush(self) -> None:
        factory, session = mock_session_factory()
        queue, _, _ = _queue(factory)

        await queue.enqueue(
            _task(), depends_on=[('up-1', DependencyType.SUCCESS), ('up-2', DependencyType.FINISH)]
        )

        session.flush.assert_awaited_once()
        rows = [c.args[0] for c in session.add.call_args_list[1:]]
        assert all(isinstance(r, TaskDependencyModel) for r in rows)
        assert [(r.depends_on_task_id, r.dependency_type) for r in rows] == [
            ('up-1', DependencyType.SUCCESS),
            ('up-2', DependencyType.FINISH),
        ]

    @pytest.mark.asyncio
    async def test_store_failure_returns_false(self) -> None:
        factory, session = mock_session_factory()
        session.commit.side_effect = RuntimeError('connection refused')
        queue, metrics, _ = _queue(factory)

        assert await queue.enqueue(_task()) is False
        assert metrics.count(MetricEvent.ENQUEUE, 'sync') == 0


@pytest.mark.unit
class TestDequeue:
    @pytest.mark.asyncio
    async def test_claimed_rows_sorted_by_priority_then_age(self) -> None:
        factory, session = mock_session_factory(
            result(
                mappings=[
                    _claimed_row('late-high', 9, T0 + timedelta(seconds=5)),
                    _claimed_row('low', 4, T0),
                    _claimed_row('early-high', 9, T0),
                ]
            )
        )
        queue, metrics, _ = _queue(factory)

        tasks = await queue.dequeue('sync', limit=3)

        assert [t.id for t in tasks] == ['early-high', 'late-high', 'low']
        assert all(t.status == TaskStatus.RUNNING for t in tasks)
        session.execute.assert_awaited_once_with(CLAIM_TASKS_SQL, {'queue': 'sync', 'lim': 3})
        assert metrics.count(MetricEvent.DEQUEUE, 'sync') == 3

    @pytest.mark.asyncio
    async def test_non_positive_limit_claims_nothing(self) -> None:
        factory, session = mock_session_factory()
        queue, _, _ = _queue(factory)

        assert await queue.dequeue('sync', limit=0) == []
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_queue_used(self) -> None:
        factory, session = mock_session_factory(result(mappings=[]))
        queue, _, _ = _queue(factory)

        assert await queue.dequeue() == []
        assert session.execute.await_args.args[1]['queue'] == 'default'


@pytest.mark.unit
class TestProcessQueue:
    @pytest.mark.asyncio
    async def test_outcomes_counted(self) -> None:
        factory, _ = mock_session_factory(
            result(
                mappings=[
                    _claimed_row(f't{n}', 5, T0 + timedelta(seconds=n)) for n in range(6)
                ]
            )
        )
        executor = AsyncMock()
        executor.execute.side_effect = [
            AttemptResult(AttemptOutcome.COMPLETED),
            AttemptResult(AttemptOutcome.RETRYING, '[network] NetworkFailure: reset'),
            AttemptResult(AttemptOutcome.FAILED, '[validation] ValidationFailure: slug'),
            AttemptResult(AttemptOutcome.SKIPPED),
            AttemptResult(AttemptOutcome.CANCELLED),
            RuntimeError('executor crashed'),
        ]
        queue, _, _ = _queue(factory, executor)

        summary = await queue.process_queue('sync')

        assert (summary.processed, summary.failed, summary.skipped) == (1, 3, 2)
        assert [(e.task_id, e.error) for e in summary.errors] == [
            ('t1', '[network] NetworkFailure: reset'),
            ('t2', '[validation] ValidationFailure: slug'),
            ('t5', 'executor crashed'),
        ]

    @pytest.mark.asyncio
    async def test_stop_request_hands_remaining_claims_back(self) -> None:
        factory, _ = mock_session_factory(
            result(
                mappings=[
                    _claimed_row(f't{n}', 5, T0 + timedelta(seconds=n)) for n in range(3)
                ]
            )
        )
        executor = AsyncMock()
        executor.execute.return_value = AttemptResult(AttemptOutcome.COMPLETED)
        executor.release_claim.return_value = True
        queue, _, _ = _queue(factory, executor)
        stop_after_first = iter([False, True])

        summary = await queue.process_queue('sync', should_stop=lambda: next(stop_after_first))

        assert summary.processed == 1
        assert [c.args[0].id for c in executor.execute.await_args_list] == ['t0']
        assert [c.args[0].id for c in executor.release_claim.await_args_list] == ['t1', 't2']

    @pytest.mark.asyncio
    async def test_cancelled_batch_hands_unstarted_claims_back(self) -> None:
        factory, _ = mock_session_factory(
            result(
                mappings=[
                    _claimed_row(f't{n}', 5, T0 + timedelta(seconds=n)) for n in range(2)
                ]
            )
        )
        executor = AsyncMock()
        executor.execute.side_effect = asyncio.CancelledError()
        executor.release_claim.return_value = True
        queue, _, _ = _queue(factory, executor)

        with pytest.raises(asyncio.CancelledError):
            await queue.process_queue('sync')

        assert [c.args[0].id for c in executor.release_claim.await_args_list] == ['t0', 't1']

    @pytest.mark.asyncio
    async def test_executor_crash_releases_that_claim(self) -> None:
        factory, _ = mock_session_factory(
            result(mappings=[_claimed_row('t0', 5, T0), _claimed_row('t1', 5, T0 + timedelta(1))])
        )
        executor = AsyncMock()
        executor.execute.side_effect = [
            RuntimeError('log table missing'),
            AttemptResult(AttemptOutcome.COMPLETED),
        ]
        executor.release_claim.return_value = False
        queue, _, _ = _queue(factory, executor)

        summary = await queue.process_queue('sync')

        assert (summary.processed, summary.failed) == (1, 1)
        assert [c.args[0].id for c in executor.release_claim.await_args_list] == ['t0']

    @pytest.mark.asyncio
    async def test_limit_defaults_to_batch_size(self) -> None:
        factory, session = mock_session_factory(result(mappings=[]))
        queue, _, _ = _queue(factory, batch_size=25)

        summary = await queue.process_queue('media_process')

        assert summary.processed == 0
        assert session.execute.await_args.args[1] == {'queue': 'media_process', 'lim': 25}


@pytest.mark.unit
class TestStatsAndHealth:
    @pytest.mark.asyncio
    async def test_stats_include_every_status(self) -> None:
        factory, _ = mock_session_factory(result(rows=[('PENDING', 4), ('FAILED', 1)]))
        queue, _, _ = _queue(factory)

        stats = await queue.get_stats('sync')

        assert stats == {
            'pending': 4,
            'running': 0,
            'retrying': 0,
            'completed': 0,
            'failed': 1,
            'cancelled': 0,
        }

    @pytest.mark.asyncio
    async def test_queue_size(self) -> None:
        factory, _ = mock_session_factory(result(scalar=12))
        queue, _, _ = _queue(factory)
        assert await queue.get_queue_size('sync') == 12

    @pytest.mark.asyncio
    async def test_health_uses_task_timeout(self) -> None:
        factory, session = mock_session_factory(
            result(rows=[('COMPLETED', 6), ('FAILED', 4)]),
            result(row=(0, 0)),
        )
        queue, _, _ = _queue(factory, task_timeout_seconds=120)

        health = await queue.get_health('sync')

        assert health.status == HealthStatus.CRITICAL
        assert session.execute.await_args.args[1] == {'timeout': 120, 'queue': 'sync'}


@pytest.mark.unit
class TestMaintenance:
    @pytest.mark.asyncio
    async def test_expire_single_task(self) -> None:
        factory, _ = mock_session_factory(result(row=('task-1',)))
        queue, _, dependencies = _queue(factory)

        assert await queue.expire_task_if_overdue('task-1') is True
        dependencies.on_task_finished.assert_awaited_once_with('task-1', TaskStatus.FAILED)

    @pytest.mark.asyncio
    async def test_expire_not_overdue(self) -> None:
        factory, _ = mock_session_factory(result(row=None))
        queue, _, dependencies = _queue(factory)

        assert await queue.expire_task_if_overdue('task-1') is False
        dependencies.on_task_finished.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cleanup_expired_counts_and_cascades(self) -> None:
        factory, session = mock_session_factory(
            result(rows=[('a', 'sync'), ('b', 'default')])
        )
        queue, metrics, dependencies = _queue(factory)
        dependencies.on_task_finished.side_effect = [[], RuntimeError('lost connection')]

        assert await queue.cleanup_expired_tasks() == 2

        assert session.execute.await_args.args[1] == {'message': EXPIRED_TASK_MESSAGE}
        assert metrics.count(MetricEvent.FAIL, 'sync') == 1
        assert metrics.count(MetricEvent.FAIL, 'default') == 1
        assert dependencies.on_task_finished.await_count == 2

    @pytest.mark.asyncio
    async def test_retry_failed_tasks(self) -> None:
        factory, session = mock_session_factory(result(rows=[('a',), ('b',), ('c',)]))
        queue, _, _ = _queue(factory)

        assert await queue.retry_failed_tasks('sync') == 3
        session.execute.assert_awaited_once_with(
            RETRY_FAILED_TASKS_SQL, {'ttl': 3600, 'queue': 'sync'}
        )

    @pytest.mark.asyncio
    async def test_purge_finished(self) -> None:
        factory, session = mock_session_factory(result(rowcount=5))
        queue, _, _ = _queue(factory)

        assert await queue.purge_finished(24) == 5
        assert session.execute.await_args.args[1] == {'hours': 24}
