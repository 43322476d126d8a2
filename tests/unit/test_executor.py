"""Unit tests for TaskExecutor attempt outcomes (stubbed locks, consistency and retry)."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from drayage.core.defaults import EXPIRED_TASK_MESSAGE
from drayage.core.errors import ErrorCode, LockUnavailableError
from drayage.core.models.tasks import Task
from drayage.core.queue.executor import (
    LOCK_CONTENTION_DELAY_SECONDS,
    AttemptOutcome,
    TaskExecutor,
)
from drayage.core.registry.handlers import HandlerRegistry, NotRegistered
from drayage.core.retry import (
    ErrorClassifier,
    FailureOutcome,
    NetworkFailure,
    RetryPolicyEngine,
)
from drayage.core.sinks import InMemoryMetrics, MetricEvent
from drayage.core.store.sql import EXPIRE_TASK_SQL, MARK_COMPLETED_SQL, UNCLAIM_TASK_SQL
from drayage.core.types.status import ExecutionStatus, TaskStatus, TaskType
from tests.helpers.fakes import FakeSession, FakeSessionFactory, result


@pytest.fixture(autouse=True)
def _fixed_rss(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('drayage.core.queue.executor._rss_bytes', lambda: 1024)


class _Locks:
    holder_id = 'cms-1:42:abcdef012345'

    def __init__(self, available: bool = True) -> None:
        self.available = available
        self.requests: list[tuple[str, float]] = []

    @asynccontextmanager
    async def holding(self, key: str, ttl: float) -> AsyncIterator[bool]:
        self.requests.append((key, ttl))
        yield self.available


class _Consistency:
    """Runs the unit directly on a scripted session."""

    def __init__(self, factory: FakeSessionFactory, completed_row: Any = ('task-1',)) -> None:
        self.transactions = SimpleNamespace(session_factory=factory)
        self.session = FakeSession([result(row=completed_row)])
        self.calls: list[tuple[str, Any]] = []
        self.raises: BaseException | None = None

    async def execute_with_consistency(
        self, task_id: str, fn: Any, *, lock_ttl: Any = None
    ) -> Any:
        self.calls.append((task_id, lock_ttl))
        if self.raises is not None:
            raise self.raises
        return await fn(self.session)


def _task(**overrides: Any) -> Task:
    fields: dict[str, Any] = dict(
        id='task-1',
        task_type=TaskType.SYNC,
        payload={'article_id': 7},
        priority=5,
        queue_name='sync',
        status=TaskStatus.RUNNING,
        retry_count=0,
        max_retries=3,
    )
    fields.update(overrides)
    return Task(**fields)


def _failure(status: TaskStatus, exc: BaseException) -> FailureOutcome:
    classification = ErrorClassifier().classify(exc)
    plan = RetryPolicyEngine().plan_retry(classification, 0, 3)
    return FailureOutcome('task-1', classification, plan, status)


class _Harness:
    def __init__(
        self,
        handler: Any = None,
        *,
        lock_available: bool = True,
        completed_row: Any = ('task-1',),
    ) -> None:
        self.factory = FakeSessionFactory()
        self.locks = _Locks(lock_available)
        self.consistency = _Consistency(self.factory, completed_row)
        self.retry = AsyncMock()
        self.dependencies = AsyncMock()
        self.metrics = InMemoryMetrics()
        self.registry = HandlerRegistry()
        if handler is not None:
            self.registry.register(TaskType.SYNC, handler, source='tests')
        self.executor = TaskExecutor(
            locks=self.locks,  # type: ignore[arg-type]
            consistency=self.consistency,  # type: ignore[arg-type]
            retry=self.retry,
            batch=MagicMock(),
            registry=self.registry,
            dependencies=self.dependencies,
            metrics=self.metrics,
        )

    def log_values(self, index: int) -> dict[str, Any]:
        """Bound values of the first statement run on the index-th session."""
        return self.factory.created[index].statements[0].compile().params


async def _publish(payload: dict[str, Any], ctx: Any) -> dict[str, Any]:
    ctx.add_processed(2)
    return {'result': {'url': f"/articles/{payload['article_id']}"}, 'processed_items': 1}


async def _unreachable(payload: dict[str, Any]) -> None:
    raise NetworkFailure('connection reset by search index')


@pytest.mark.unit
class TestExecuteSuccess:
    @pytest.mark.asyncio
    async def test_completed_attempt(self) -> None:
        harness = _Harness(_publish)

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.COMPLETED
        assert attempt.finished is True
        sql, params = harness.consistency.session.executed[0]
        assert sql == str(MARK_COMPLETED_SQL)
        assert params['result'].obj == {'url': '/articles/7'}
        harness.dependencies.on_task_finished.assert_awaited_once_with(
            'task-1', TaskStatus.COMPLETED
        )
        assert harness.metrics.count(MetricEvent.COMPLETE, 'sync') == 1

    @pytest.mark.asyncio
    async def test_execution_log_opened_and_closed(self) -> None:
        harness = _Harness(_publish)

        await harness.executor.execute(_task(retry_count=2))

        opened = harness.log_values(0)
        assert opened['status'] == ExecutionStatus.RUNNING
        assert opened['attempt'] == 2
        assert opened['worker_id'] == _Locks.holder_id
        closed = harness.log_values(1)
        assert closed['status'] == ExecutionStatus.COMPLETED
        assert closed['processed_items'] == 2
        assert closed['memory_used_bytes'] == 0

    @pytest.mark.asyncio
    async def test_dependency_errors_do_not_change_outcome(self) -> None:
        harness = _Harness(_publish)
        harness.dependencies.on_task_finished.side_effect = RuntimeError('pool closed')

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.COMPLETED


@pytest.mark.unit
class TestExecuteLocking:
    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_skips(self) -> None:
        harness = _Harness(_publish, lock_available=False)

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.SKIPPED
        assert attempt.finished is False
        assert harness.consistency.calls == []
        assert harness.log_values(0)['status'] == ExecutionStatus.SKIPPED
        harness.dependencies.on_task_finished.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere_hands_claim_back(self) -> None:
        harness = _Harness(_publish, lock_available=False)
        claimed_at = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

        await harness.executor.execute(_task(started_at=claimed_at))

        sql, params = harness.factory.created[1].executed[0]
        assert sql == str(UNCLAIM_TASK_SQL)
        assert params == {
            'id': 'task-1',
            'started_at': claimed_at,
            'delay': LOCK_CONTENTION_DELAY_SECONDS,
        }

    @pytest.mark.asyncio
    async def test_consistency_lock_contention_skips_without_retry(self) -> None:
        harness = _Harness(_publish)
        harness.consistency.raises = LockUnavailableError(
            message="consistency lock 'consistency:task-1' is held elsewhere",
            code=ErrorCode.LOCK_UNAVAILABLE,
            lock_key='consistency:task-1',
        )

        attempt = await harness.executor.execute(_task(retry_count=1))

        assert attempt.outcome == AttemptOutcome.SKIPPED
        harness.retry.handle_failure.assert_not_awaited()
        harness.dependencies.on_task_finished.assert_not_awaited()
        assert harness.log_values(1)['status'] == ExecutionStatus.SKIPPED
        sql, _ = harness.factory.created[2].executed[0]
        assert sql == str(UNCLAIM_TASK_SQL)

    @pytest.mark.asyncio
    async def test_lock_taken_by_handler_is_an_ordinary_failure(self) -> None:
        harness = _Harness(_publish)
        harness.consistency.raises = LockUnavailableError(
            message="lock 'article:7' is held elsewhere",
            code=ErrorCode.LOCK_UNAVAILABLE,
            lock_key='article:7',
        )
        harness.retry.handle_failure.side_effect = lambda task, exc: _failure(
            TaskStatus.RETRYING, exc
        )

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.RETRYING
        harness.retry.handle_failure.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_release_claim_reports_moved_on_rows(self) -> None:
        harness = _Harness(_publish)
        harness.factory.pending = [FakeSession([result(row=('task-1',))]), FakeSession()]

        assert await harness.executor.release_claim(_task()) is True
        assert await harness.executor.release_claim(_task()) is False

    @pytest.mark.asyncio
    async def test_lock_ttl_without_expiry(self) -> None:
        harness = _Harness(_publish)

        await harness.executor.execute(_task())

        assert harness.locks.requests == [('task:task-1', 300)]
        assert harness.consistency.calls == [('task-1', 300)]

    @pytest.mark.asyncio
    async def test_lock_ttl_covers_remaining_time(self) -> None:
        harness = _Harness(_publish)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=1000)

        await harness.executor.execute(_task(expires_at=expires_at))

        _, ttl = harness.locks.requests[0]
        assert 1020 < ttl <= 1030


@pytest.mark.unit
class TestExecuteFailures:
    @pytest.mark.asyncio
    async def test_cancelled_while_running_discards_result(self) -> None:
        harness = _Harness(_publish, completed_row=None)

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.CANCELLED
        assert harness.log_values(1)['status'] == ExecutionStatus.CANCELLED
        harness.retry.handle_failure.assert_not_awaited()
        harness.dependencies.on_task_finished.assert_awaited_once_with(
            'task-1', TaskStatus.CANCELLED
        )
        assert harness.metrics.count(MetricEvent.COMPLETE, 'sync') == 0

    @pytest.mark.asyncio
    async def test_retryable_failure(self) -> None:
        harness = _Harness(_unreachable)
        harness.retry.handle_failure.side_effect = lambda task, exc: _failure(
            TaskStatus.RETRYING, exc
        )

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.RETRYING
        assert attempt.error is not None
        assert attempt.error.startswith('[network] NetworkFailure')
        closed = harness.log_values(1)
        assert closed['status'] == ExecutionStatus.RETRYING
        assert closed['error']['category'] == 'network'
        assert closed['error']['retry']['should_retry'] is True
        harness.dependencies.on_task_finished.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_final_failure_notifies_dependents(self) -> None:
        harness = _Harness(_unreachable)
        harness.retry.handle_failure.side_effect = lambda task, exc: _failure(
            TaskStatus.FAILED, exc
        )

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.FAILED
        assert harness.log_values(1)['status'] == ExecutionStatus.FAILED
        harness.dependencies.on_task_finished.assert_awaited_once_with(
            'task-1', TaskStatus.FAILED
        )

    @pytest.mark.asyncio
    async def test_missing_handler_goes_through_retry_manager(self) -> None:
        harness = _Harness()
        harness.retry.handle_failure.side_effect = lambda task, exc: _failure(
            TaskStatus.FAILED, exc
        )

        attempt = await harness.executor.execute(_task())

        assert attempt.outcome == AttemptOutcome.FAILED
        _, exc = harness.retry.handle_failure.await_args.args
        assert isinstance(exc, NotRegistered)

    @pytest.mark.asyncio
    async def test_handler_past_expiry_fails_task(self) -> None:
        async def slow(payload: dict[str, Any]) -> None:
            await asyncio.sleep(5)

        harness = _Harness(slow)
        expired = datetime.now(timezone.utc) - timedelta(seconds=1)

        attempt = await harness.executor.execute(_task(expires_at=expired))

        assert attempt.outcome == AttemptOutcome.FAILED
        assert attempt.error == EXPIRED_TASK_MESSAGE
        sql, params = harness.factory.created[1].executed[0]
        assert sql == str(EXPIRE_TASK_SQL)
        assert params == {'id': 'task-1', 'message': EXPIRED_TASK_MESSAGE}
        assert harness.log_values(2)['status'] == ExecutionStatus.FAILED
        assert harness.metrics.count(MetricEvent.FAIL, 'sync') == 1
        harness.retry.handle_failure.assert_not_awaited()
