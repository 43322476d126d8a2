from __future__ import annotations

from typing import Annotated, Optional, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator

from drayage.core import defaults
from drayage.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected
from drayage.core.types.status import TaskType


def _default_type_routes() -> dict[TaskType, str]:
    return {
        TaskType.SYNC: 'sync',
        TaskType.MEDIA_PROCESS: 'media_process',
        TaskType.BATCH_PROCESS: 'batch_process',
    }


class QueueConfig(BaseModel):
    """Queue routing, task timing and retention settings."""

    model_config = ConfigDict(frozen=True)

    default_queue: str = defaults.DEFAULT_QUEUE
    high_priority_queue: str = defaults.HIGH_PRIORITY_QUEUE
    low_priority_queue: str = defaults.LOW_PRIORITY_QUEUE
    high_priority_threshold: Annotated[int, Field(ge=1, le=10)] = defaults.HIGH_PRIORITY_THRESHOLD
    low_priority_threshold: Annotated[int, Field(ge=1, le=10)] = defaults.LOW_PRIORITY_THRESHOLD
    # Task types without an entry go to default_queue
    type_routes: dict[TaskType, str] = Field(default_factory=_default_type_routes)

    batch_size: Annotated[int, Field(ge=1, le=1000)] = defaults.DEFAULT_BATCH_SIZE
    task_timeout_seconds: Annotated[int, Field(ge=1)] = defaults.DEFAULT_TASK_TIMEOUT_SECONDS
    default_ttl_seconds: Annotated[int, Field(ge=1)] = defaults.DEFAULT_TTL_SECONDS
    # Terminal tasks older than this are deleted by the retention sweep; None disables it
    retention_hours: Optional[Annotated[int, Field(ge=1)]] = defaults.DEFAULT_RETENTION_HOURS
    idempotency_retention_days: Annotated[int, Field(ge=1)] = (
        defaults.DEFAULT_IDEMPOTENCY_RETENTION_DAYS
    )
    lock_ttl_seconds: Annotated[int, Field(ge=1)] = defaults.DEFAULT_LOCK_TTL_SECONDS

    @model_validator(mode='after')
    def validate_routing(self) -> Self:
        report = ValidationReport('queues')
        if self.low_priority_threshold >= self.high_priority_threshold:
            report.add(
                ConfigurationError(
                    message='low_priority_threshold must be below high_priority_threshold',
                    code=ErrorCode.CONFIG_INVALID_QUEUE,
                    notes=[
                        f'low_priority_threshold={self.low_priority_threshold}',
                        f'high_priority_threshold={self.high_priority_threshold}',
                    ],
                )
            )
        names = [self.default_queue, self.high_priority_queue, self.low_priority_queue]
        names.extend(self.type_routes.values())
        empty = [n for n in names if not n or not n.strip()]
        if empty:
            report.add(
                ConfigurationError(
                    message='queue names must be non-empty',
                    code=ErrorCode.CONFIG_INVALID_QUEUE,
                    help_text='give every routed queue a name',
                )
            )
        raise_collected(report)
        return self

    def all_queue_names(self) -> list[str]:
        """Every queue routing can produce, in a stable order."""
        names = [self.high_priority_queue, self.default_queue]
        for name in self.type_routes.values():
            if name not in names:
                names.append(name)
        if self.low_priority_queue not in names:
            names.append(self.low_priority_queue)
        return names
