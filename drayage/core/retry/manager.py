# drayage/core/retry/manager.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from psycopg.types.json import Jsonb
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from drayage.core.defaults import DEFAULT_TTL_SECONDS
from drayage.core.logging import get_logger
from drayage.core.models.tasks import Task
from drayage.core.retry.classifier import ErrorClassification, ErrorClassifier
from drayage.core.retry.policy import RetryPlan, RetryPolicyEngine
from drayage.core.sinks import (
    LoggingNotificationSink,
    MetricEvent,
    MetricsSink,
    NotificationSink,
    emit_metric,
    notify_safely,
)
from drayage.core.store.sql import (
    DEAD_LETTER_TASKS_SQL,
    ERROR_STATISTICS_SQL,
    GET_STATUS_SQL,
    MANUAL_RETRY_SQL,
    MARK_FAILED_SQL,
    PROMOTE_DUE_RETRIES_SQL,
    RETRY_STATISTICS_SQL,
    SCHEDULE_RETRY_SQL,
)
from drayage.core.types.errors import Severity
from drayage.core.types.status import TaskStatus, TaskType


@dataclass
class FailureOutcome:
    """What handle_failure() did with a failed attempt.

    final_status is RETRYING or FAILED when this call moved the task, or the
    status found in the store when the task had already left RUNNING
    (typically CANCELLED) and nothing was written.
    """

    task_id: str
    classification: ErrorClassification
    plan: RetryPlan
    final_status: Optional[TaskStatus]
    notified: bool = False

    @property
    def retried(self) -> bool:
        return self.final_status == TaskStatus.RETRYING


class RetryManager:
    """Persists retry decisions: backoff schedules, final failures, manual retries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        classifier: Optional[ErrorClassifier] = None,
        policy: Optional[RetryPolicyEngine] = None,
        metrics: Optional[MetricsSink] = None,
        notifier: Optional[NotificationSink] = None,
        alert_min_severity: Severity = Severity.HIGH,
        retry_ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self.session_factory = session_factory
        self.classifier = classifier or ErrorClassifier()
        self.policy = policy or RetryPolicyEngine()
        self.metrics = metrics
        self.notifier: NotificationSink = notifier or LoggingNotificationSink()
        self.alert_min_severity = alert_min_severity
        self.retry_ttl_seconds = retry_ttl_seconds
        self.logger = get_logger('retry')

    async def handle_failure(self, task: Task, error: BaseException) -> FailureOutcome:
        """Classify `error`, then either schedule a retry of `task` or fail it for good."""
        classification = self.classifier.classify(error)
        plan = self.policy.plan_retry(classification, task.retry_count, task.max_retries)

        if plan.should_retry:
            if await self.schedule_retry(task.id, plan, classification):
                await emit_metric(self.metrics, MetricEvent.RETRY, task.queue_name)
                return FailureOutcome(task.id, classification, plan, TaskStatus.RETRYING)
            status = await self._status_of(task.id)
            if status != TaskStatus.RUNNING:
                return FailureOutcome(task.id, classification, plan, status)
            # Still ours, but the stored budget is spent: fail it below
            self.logger.warning(f'Task {task.id} has no retry budget left in the store')

        async with self.session_factory() as session:
            result = await session.execute(
                MARK_FAILED_SQL,
                {'id': task.id, 'error_message': classification.format_message()},
            )
            failed = result.fetchone() is not None
            await session.commit()

        if not failed:
            status = await self._status_of(task.id)
            self.logger.info(
                f'Task {task.id} left RUNNING before its failure was recorded '
                f'(now {status.name if status else "missing"}); discarding failure'
            )
            return FailureOutcome(task.id, classification, plan, status)

        self.logger.error(
            f'Task {task.id} failed permanently: {classification.format_message()} ({plan.reason})'
        )
        await emit_metric(self.metrics, MetricEvent.FAIL, task.queue_name)

        notified = False
        if classification.severity.rank >= self.alert_min_severity.rank:
            notified = await notify_safely(
                self.notifier,
                classification.severity,
                f'Task {task.id} ({task.task_type.value}) failed permanently',
                {
                    'task_id': task.id,
                    'queue_name': task.queue_name,
                    'retry_count': task.retry_count,
                    **classification.to_dict(),
                },
            )
        return FailureOutcome(task.id, classification, plan, TaskStatus.FAILED, notified)

    async def schedule_retry(
        self,
        task_id: str,
        plan: RetryPlan,
        error: ErrorClassification | BaseException,
    ) -> bool:
        """RUNNING -> RETRYING with retry_count + 1 and scheduled_at = plan.next_retry_at.

        False when the task is no longer RUNNING (cancelled meanwhile) or its
        stored budget is spent.
        """
        if not plan.should_retry or plan.next_retry_at is None:
            raise ValueError(f'plan for task {task_id} does not call for a retry: {plan.reason}')
        classification = (
            error if isinstance(error, ErrorClassification) else self.classifier.classify(error)
        )
        retry_info = {
            'last_error': classification.message,
            'category': classification.category.value,
            'strategy': plan.strategy.kind.value,
            'delay': plan.delay,
            'next_retry_at': plan.next_retry_at.isoformat(),
        }
        async with self.session_factory() as session:
            result = await session.execute(
                SCHEDULE_RETRY_SQL,
                {
                    'id': task_id,
                    'scheduled_at': plan.next_retry_at,
                    'error_message': classification.format_message(),
                    'retry_info': Jsonb(retry_info),
                },
            )
            row = result.fetchone()
            await session.commit()

        if row is None:
            self.logger.info(
                f'Retry of task {task_id} not scheduled: task is not RUNNING or its budget is spent'
            )
            return False
        self.logger.warning(
            f'Task {task_id} scheduled for retry {row[0]} at {row[1].isoformat()} ({plan.reason})'
        )
        return True

    async def process_due_retries(self, limit: int = 100) -> int:
        """Move RETRYING tasks whose backoff has elapsed back to PENDING.

        Tasks cancelled while waiting are no longer RETRYING and stay put.
        """
        async with self.session_factory() as session:
            result = await session.execute(PROMOTE_DUE_RETRIES_SQL, {'lim': limit})
            ids = [row[0] for row in result.fetchall()]
            await session.commit()
        if ids:
            self.logger.info(f'Resubmitted {len(ids)} due retr{"y" if len(ids) == 1 else "ies"}')
        return len(ids)

    async def manual_retry(self, task_id: str, reset_retry_count: bool = False) -> bool:
        """Administrative FAILED/CANCELLED -> PENDING, runnable immediately.

        retry_count is kept (or zeroed with reset_retry_count); a manual retry
        is not charged against the budget.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                MANUAL_RETRY_SQL,
                {'id': task_id, 'reset': reset_retry_count, 'ttl': self.retry_ttl_seconds},
            )
            retried = result.fetchone() is not None
            await session.commit()

        if retried:
            self.logger.info(
                f'Task {task_id} manually retried'
                + (' (retry count reset)' if reset_retry_count else '')
            )
        else:
            status = await self._status_of(task_id)
            self.logger.warning(
                f'Task {task_id} cannot be retried from '
                f'{status.name if status else "unknown task"}'
            )
        return retried

    async def get_retry_statistics(self, queue_name: Optional[str] = None) -> dict[str, Any]:
        async with self.session_factory() as session:
            result = await session.execute(RETRY_STATISTICS_SQL, {'queue': queue_name})
            row = result.mappings().one()
        return {
            'queue_name': queue_name,
            'retried_tasks': int(row['retried_tasks']),
            'waiting_retries': int(row['waiting_retries']),
            'recovered': int(row['recovered']),
            'exhausted': int(row['exhausted']),
            'avg_retry_count': round(float(row['avg_retry_count']), 2),
            'max_retry_count': int(row['max_retry_count']),
        }

    async def get_error_statistics(
        self,
        queue_name: Optional[str] = None,
        task_type: Optional[TaskType] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Failed attempts in [since, until), counted by category and by exception type."""
        async with self.session_factory() as session:
            result = await session.execute(
                ERROR_STATISTICS_SQL,
                {
                    'queue': queue_name,
                    'task_type': task_type.name if task_type is not None else None,
                    'since': since,
                    'until': until,
                },
            )
            rows = result.mappings().all()

        by_category: dict[str, int] = {}
        for row in rows:
            by_category[row['category']] = by_category.get(row['category'], 0) + row['occurrences']
        return {
            'queue_name': queue_name,
            'task_type': task_type.value if task_type is not None else None,
            'since': since.isoformat() if since else None,
            'until': until.isoformat() if until else None,
            'total_errors': sum(by_category.values()),
            'by_category': by_category,
            'by_type': [
                {
                    'category': row['category'],
                    'error_type': row['error_type'],
                    'occurrences': int(row['occurrences']),
                    'tasks': int(row['tasks']),
                    'first_seen': row['first_seen'].isoformat(),
                    'last_seen': row['last_seen'].isoformat(),
                }
                for row in rows
            ],
        }

    async def list_dead_letters(
        self, queue_name: Optional[str] = None, limit: int = 100
    ) -> list[Task]:
        """FAILED tasks with no retry budget left, most recently failed first."""
        async with self.session_factory() as session:
            result = await session.execute(
                DEAD_LETTER_TASKS_SQL, {'queue': queue_name, 'lim': max(1, limit)}
            )
            rows = result.mappings().all()
        return [Task.from_mapping(row) for row in rows]

    async def _status_of(self, task_id: str) -> Optional[TaskStatus]:
        async with self.session_factory() as session:
            result = await session.execute(GET_STATUS_SQL, {'id': task_id})
            row = result.fetchone()
        return TaskStatus[row[0]] if row is not None else None
