"""Unit tests for RetryManager persistence decisions (mocked sessions)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from drayage.core.models.tasks import Task
from drayage.core.retry import (
    DatabaseFailure,
    NetworkFailure,
    RetryManager,
    ValidationFailure,
)
from drayage.core.sinks import InMemoryMetrics, MetricEvent
from drayage.core.store.sql import (
    DEAD_LETTER_TASKS_SQL,
    ERROR_STATISTICS_SQL,
    MANUAL_RETRY_SQL,
    MARK_FAILED_SQL,
    SCHEDULE_RETRY_SQL,
)
from drayage.core.types.errors import Severity
from drayage.core.types.status import TaskStatus, TaskType


def _result(row: Any = None, rows: list[Any] | None = None) -> MagicMock:
    result = MagicMock()
    result.fetchone.return_value = row
    result.fetchall.return_value = rows or []
    return result


def _session_factory(*results: MagicMock) -> tuple[MagicMock, AsyncMock]:
    """Factory whose sessions share one AsyncMock; execute() yields `results` in order."""
    session = AsyncMock()
    session.execute.side_effect = list(results)
    factory = MagicMock()
    factory.return_value.__aenter__ = AsyncMock(return_value=session)
    factory.return_value.__aexit__ = AsyncMock(return_value=False)
    return factory, session


def _task(retry_count: int = 0, max_retries: int = 3) -> Task:
    return Task(
        id='task-1',
        task_type=TaskType.SYNC,
        payload={'article_id': 7},
        priority=5,
        queue_name='sync',
        status=TaskStatus.RUNNING,
        retry_count=retry_count,
        max_retries=max_retries,
    )


def _manager(factory: MagicMock, **kwargs: Any) -> tuple[RetryManager, InMemoryMetrics]:
    metrics = InMemoryMetrics()
    return RetryManager(factory, metrics=metrics, **kwargs), metrics


@pytest.mark.unit
class TestHandleFailure:
    @pytest.mark.asyncio
    async def test_recoverable_error_schedules_retry(self) -> None:
        next_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        factory, session = _session_factory(_result(row=(1, next_at)))
        manager, metrics = _manager(factory)

        outcome = await manager.handle_failure(_task(), NetworkFailure('socket reset'))

        assert outcome.retried is True
        assert outcome.final_status == TaskStatus.RETRYING
        assert outcome.plan.delay == 5
        stmt, params = session.execute.call_args[0]
        assert stmt is SCHEDULE_RETRY_SQL
        assert params['id'] == 'task-1'
        assert params['scheduled_at'] == outcome.plan.next_retry_at
        assert params['error_message'] == '[network] NetworkFailure: socket reset'
        assert metrics.count(MetricEvent.RETRY, 'sync') == 1

    @pytest.mark.asyncio
    async def test_retry_not_scheduled_when_task_left_running(self) -> None:
        factory, _ = _session_factory(_result(row=None), _result(row=('CANCELLED',)))
        manager, metrics = _manager(factory)

        outcome = await manager.handle_failure(_task(), NetworkFailure('socket reset'))

        assert outcome.retried is False
        assert outcome.final_status == TaskStatus.CANCELLED
        assert metrics.count(MetricEvent.RETRY, 'sync') == 0

    @pytest.mark.asyncio
    async def test_spent_stored_budget_fails_task_still_running(self) -> None:
        factory, session = _session_factory(
            _result(row=None), _result(row=('RUNNING',)), _result(row=('task-1',))
        )
        manager, metrics = _manager(factory)

        outcome = await manager.handle_failure(_task(), NetworkFailure('socket reset'))

        assert outcome.final_status == TaskStatus.FAILED
        statements = [c.args[0] for c in session.execute.call_args_list]
        assert statements[0] is SCHEDULE_RETRY_SQL
        assert statements[2] is MARK_FAILED_SQL
        assert metrics.count(MetricEvent.FAIL, 'sync') == 1
        assert metrics.count(MetricEvent.RETRY, 'sync') == 0

    @pytest.mark.asyncio
    async def test_exhausted_budget_fails_and_alerts(self) -> None:
        factory, session = _session_factory(_result(row=('task-1',)))
        notifier = AsyncMock()
        manager, metrics = _manager(factory, notifier=notifier)

        outcome = await manager.handle_failure(
            _task(retry_count=2, max_retries=2), DatabaseFailure('deadlock detected')
        )

        assert outcome.final_status == TaskStatus.FAILED
        assert outcome.notified is True
        assert session.execute.call_args[0][0] is MARK_FAILED_SQL
        assert metrics.count(MetricEvent.FAIL, 'sync') == 1
        severity, message, context = notifier.send.call_args[0]
        assert severity == Severity.HIGH
        assert 'task-1' in message
        assert context['category'] == 'database'
        assert context['retry_count'] == 2

    @pytest.mark.asyncio
    async def test_non_recoverable_fails_on_first_attempt(self) -> None:
        factory, _ = _session_factory(_result(row=('task-1',)))
        notifier = AsyncMock()
        manager, _ = _manager(factory, notifier=notifier)

        outcome = await manager.handle_failure(_task(), ValidationFailure('slug missing'))

        assert outcome.final_status == TaskStatus.FAILED
        assert outcome.plan.should_retry is False
        # medium severity is below the default alert threshold
        assert outcome.notified is False
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_alert_threshold_is_configurable(self) -> None:
        factory, _ = _session_factory(_result(row=('task-1',)))
        notifier = AsyncMock()
        manager, _ = _manager(factory, notifier=notifier, alert_min_severity=Severity.LOW)

        outcome = await manager.handle_failure(_task(), ValidationFailure('slug missing'))

        assert outcome.notified is True

    @pytest.mark.asyncio
    async def test_failing_notifier_does_not_change_outcome(self) -> None:
        factory, _ = _session_factory(_result(row=('task-1',)))
        notifier = AsyncMock()
        notifier.send.side_effect = RuntimeError('pager down')
        manager, _ = _manager(factory, notifier=notifier)

        outcome = await manager.handle_failure(_task(max_retries=0), DatabaseFailure('gone'))

        assert outcome.final_status == TaskStatus.FAILED
        assert outcome.notified is False

    @pytest.mark.asyncio
    async def test_failure_discarded_when_task_cancelled(self) -> None:
        factory, _ = _session_factory(_result(row=None), _result(row=('CANCELLED',)))
        manager, metrics = _manager(factory)

        outcome = await manager.handle_failure(_task(max_retries=0), RuntimeError('boom'))

        assert outcome.final_status == TaskStatus.CANCELLED
        assert metrics.count(MetricEvent.FAIL, 'sync') == 0


@pytest.mark.unit
class TestScheduleRetry:
    @pytest.mark.asyncio
    async def test_rejects_plan_without_retry(self) -> None:
        factory, session = _session_factory()
        manager, _ = _manager(factory)
        classification = manager.classifier.classify(ValidationFailure('bad'))
        plan = manager.policy.plan_retry(classification, 0, 3)

        with pytest.raises(ValueError):
            await manager.schedule_retry('task-1', plan, classification)
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_accepts_raw_exception(self) -> None:
        next_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        factory, session = _session_factory(_result(row=(1, next_at)))
        manager, _ = _manager(factory)
        error = NetworkFailure('reset')
        plan = manager.policy.plan_retry(manager.classifier.classify(error), 0, 3)

        assert await manager.schedule_retry('task-1', plan, error) is True
        params = session.execute.call_args[0][1]
        assert params['retry_info'].obj['category'] == 'network'
        assert params['retry_info'].obj['strategy'] == 'exponential'


@pytest.mark.unit
class TestManualAndDueRetries:
    @pytest.mark.asyncio
    async def test_manual_retry_accepted(self) -> None:
        factory, session = _session_factory(_result(row=('task-1',)))
        manager, _ = _manager(factory, retry_ttl_seconds=600)

        assert await manager.manual_retry('task-1', reset_retry_count=True) is True
        stmt, params = session.execute.call_args[0]
        assert stmt is MANUAL_RETRY_SQL
        assert params == {'id': 'task-1', 'reset': True, 'ttl': 600}

    @pytest.mark.asyncio
    async def test_manual_retry_refused_for_running_task(self) -> None:
        factory, _ = _session_factory(_result(row=None), _result(row=('RUNNING',)))
        manager, _ = _manager(factory)

        assert await manager.manual_retry('task-1') is False

    @pytest.mark.asyncio
    async def test_manual_retry_unknown_task(self) -> None:
        factory, _ = _session_factory(_result(row=None), _result(row=None))
        manager, _ = _manager(factory)

        assert await manager.manual_retry('missing') is False

    @pytest.mark.asyncio
    async def test_process_due_retries_counts_promoted(self) -> None:
        factory, session = _session_factory(_result(rows=[('a',), ('b',)]))
        manager, _ = _manager(factory)

        assert await manager.process_due_retries(limit=50) == 2
        assert session.execute.call_args[0][1] == {'lim': 50}
        session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_retry_statistics(self) -> None:
        result = MagicMock()
        result.mappings.return_value.one.return_value = {
            'retried_tasks': 4,
            'waiting_retries': 1,
            'recovered': 2,
            'exhausted': 1,
            'avg_retry_count': 1.3333,
            'max_retry_count': 3,
        }
        factory, _ = _session_factory(result)
        manager, _ = _manager(factory)

        stats = await manager.get_retry_statistics('sync')

        assert stats['queue_name'] == 'sync'
        assert stats['recovered'] == 2
        assert stats['avg_retry_count'] == 1.33


@pytest.mark.unit
class TestFailureReports:
    @pytest.mark.asyncio
    async def test_error_statistics_grouped(self) -> None:
        seen = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
        result = MagicMock()
        result.mappings.return_value.all.return_value = [
            {'category': 'network', 'error_type': 'NetworkFailure', 'occurrences': 5,
             'tasks': 3, 'first_seen': seen, 'last_seen': seen},
            {'category': 'network', 'error_type': 'ConnectionError', 'occurrences': 2,
             'tasks': 2, 'first_seen': seen, 'last_seen': seen},
            {'category': 'validation', 'error_type': 'ValueError', 'occurrences': 1,
             'tasks': 1, 'first_seen': seen, 'last_seen': seen},
        ]
        factory, session = _session_factory(result)
        manager, _ = _manager(factory)

        stats = await manager.get_error_statistics(
            queue_name='sync', task_type=TaskType.MEDIA_PROCESS, since=seen
        )

        stmt, params = session.execute.call_args[0]
        assert stmt is ERROR_STATISTICS_SQL
        assert params == {
            'queue': 'sync', 'task_type': 'MEDIA_PROCESS', 'since': seen, 'until': None
        }
        assert stats['total_errors'] == 8
        assert stats['by_category'] == {'network': 7, 'validation': 1}
        assert stats['by_type'][0]['error_type'] == 'NetworkFailure'
        assert stats['since'] == '2026-03-01T09:00:00+00:00'
        assert stats['task_type'] == 'media_process'

    @pytest.mark.asyncio
    async def test_error_statistics_empty_window(self) -> None:
        result = MagicMock()
        result.mappings.return_value.all.return_value = []
        factory, _ = _session_factory(result)
        manager, _ = _manager(factory)

        stats = await manager.get_error_statistics()

        assert stats['total_errors'] == 0
        assert stats['by_category'] == {}
        assert stats['by_type'] == []

    @pytest.mark.asyncio
    async def test_dead_letters_are_exhausted_failures(self) -> None:
        result = MagicMock()
        result.mappings.return_value.all.return_value = [
            {
                'id': 'task-9',
                'task_type': 'NOTIFICATION',
                'payload': {'to': 'desk@cms'},
                'priority': 5,
                'queue_name': 'default',
                'status': 'FAILED',
                'retry_count': 3,
                'max_retries': 3,
                'error_message': '[network] NetworkFailure: relay down',
            }
        ]
        factory, session = _session_factory(result)
        manager, _ = _manager(factory)

        [task] = await manager.list_dead_letters('default', limit=0)

        stmt, params = session.execute.call_args[0]
        assert stmt is DEAD_LETTER_TASKS_SQL
        assert params == {'queue': 'default', 'lim': 1}
        assert task.status == TaskStatus.FAILED
        assert task.task_type == TaskType.NOTIFICATION
        assert task.error_message == '[network] NetworkFailure: relay down'
