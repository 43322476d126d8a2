# drayage/core/models/tasks.py
from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from drayage.core.types.status import TaskStatus, TaskType


@dataclass
class Task:
    """Snapshot of a task row, detached from any session."""

    id: str
    task_type: TaskType
    payload: dict[str, Any]
    priority: int
    queue_name: str
    status: TaskStatus
    retry_count: int
    max_retries: int
    progress: int = 0
    created_by: str | None = None
    created_at: datetime.datetime | None = None
    started_at: datetime.datetime | None = None
    completed_at: datetime.datetime | None = None
    expires_at: datetime.datetime | None = None
    scheduled_at: datetime.datetime | None = None
    error_message: str | None = None
    result: Any = None

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def can_retry(self) -> bool:
        """Whether a manual retry would be accepted right now."""
        return self.status in (TaskStatus.FAILED, TaskStatus.CANCELLED)

    def is_expired(self, now: datetime.datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or datetime.datetime.now(datetime.timezone.utc)
        return self.expires_at <= now

    @classmethod
    def from_model(cls, row: Any) -> Task:
        """Build from a TaskModel instance (or anything with the same attributes)."""
        return cls(
            id=row.id,
            task_type=row.task_type,
            payload=dict(row.payload or {}),
            priority=row.priority,
            queue_name=row.queue_name,
            status=row.status,
            retry_count=row.retry_count,
            max_retries=row.max_retries,
            progress=row.progress,
            created_by=row.created_by,
            created_at=row.created_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            expires_at=row.expires_at,
            scheduled_at=row.scheduled_at,
            error_message=row.error_message,
            result=row.result,
        )

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> Task:
        """Build from a raw SQL row mapping; enum columns hold member names."""
        return cls(
            id=row['id'],
            task_type=TaskType[row['task_type']],
            payload=dict(row['payload'] or {}),
            priority=row['priority'],
            queue_name=row['queue_name'],
            status=TaskStatus[row['status']],
            retry_count=row['retry_count'],
            max_retries=row['max_retries'],
            progress=row.get('progress', 0),
            created_by=row.get('created_by'),
            created_at=row.get('created_at'),
            started_at=row.get('started_at'),
            completed_at=row.get('completed_at'),
            expires_at=row.get('expires_at'),
            scheduled_at=row.get('scheduled_at'),
            error_message=row.get('error_message'),
            result=row.get('result'),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'task_type': self.task_type.value,
            'payload': self.payload,
            'priority': self.priority,
            'queue_name': self.queue_name,
            'status': self.status.value,
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'progress': self.progress,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'expires_at': _iso(self.expires_at),
            'scheduled_at': _iso(self.scheduled_at),
            'error_message': self.error_message,
            'result': self.result,
        }


def _iso(value: datetime.datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class TaskPage:
    """One page of list_tasks() output."""

    items: list[Task]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


@dataclass
class TaskFilters:
    status: Optional[TaskStatus] = None
    task_type: Optional[TaskType] = None
    queue_name: Optional[str] = None
    created_by: Optional[str] = None


@dataclass
class HandlerOutcome:
    """What a handler hands back: an opaque result and how many items it touched."""

    result: Any = None
    processed_items: int = 0

    @classmethod
    def coerce(cls, value: Any) -> HandlerOutcome:
        """Accept a HandlerOutcome, a `{result, processed_items}` dict, or a bare value."""
        if isinstance(value, HandlerOutcome):
            return value
        if isinstance(value, dict) and 'result' in value:
            return cls(
                result=value['result'],
                processed_items=int(value.get('processed_items') or 0),
            )
        return cls(result=value)


@dataclass
class TaskProcessError:
    task_id: str
    error: str


@dataclass
class ProcessSummary:
    """Outcome counters of one process_queue() pass."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[TaskProcessError] = field(default_factory=lambda: [])

    def merge(self, other: ProcessSummary) -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            'processed': self.processed,
            'failed': self.failed,
            'skipped': self.skipped,
            'errors': [{'task_id': e.task_id, 'error': e.error} for e in self.errors],
        }


class HealthStatus(str, Enum):
    HEALTHY = 'healthy'
    WARNING = 'warning'
    CRITICAL = 'critical'


@dataclass
class QueueHealth:
    queue_name: str | None
    status: HealthStatus
    pending: int
    running: int
    failed: int
    long_running: int
    total: int

    @property
    def failure_ratio(self) -> float:
        return self.failed / self.total if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            'queue_name': self.queue_name,
            'status': self.status.value,
            'pending': self.pending,
            'running': self.running,
            'failed': self.failed,
            'long_running': self.long_running,
            'total': self.total,
            'failure_ratio': round(self.failure_ratio, 4),
        }
