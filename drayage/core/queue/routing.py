"""Queue selection and queue health rules. No I/O."""

from __future__ import annotations

from typing import Mapping, Optional

from drayage.core.defaults import HEALTH_CRITICAL_FAILURE_RATIO, HEALTH_WARNING_FAILURE_RATIO
from drayage.core.models.queues import QueueConfig
from drayage.core.models.tasks import HealthStatus, QueueHealth
from drayage.core.types.status import TaskStatus, TaskType


def determine_queue_name(
    priority: int,
    task_type: TaskType,
    explicit: Optional[str] = None,
    config: Optional[QueueConfig] = None,
) -> str:
    """Explicit name first, then priority band, then the task type's route."""
    config = config or QueueConfig()
    if explicit:
        return explicit
    if priority >= config.high_priority_threshold:
        return config.high_priority_queue
    if priority <= config.low_priority_threshold:
        return config.low_priority_queue
    return config.type_routes.get(task_type, config.default_queue)


def evaluate_health(
    queue_name: Optional[str],
    counts: Mapping[TaskStatus, int],
    long_running: int,
    stuck: int,
) -> QueueHealth:
    """
    - critical: failure ratio > 30%, or a task RUNNING for over twice the timeout
    - warning: failure ratio > 10%, or a task RUNNING for over the timeout
    - healthy otherwise

    The ratio is FAILED over all tasks in scope.
    """
    total = sum(counts.values())
    failed = counts.get(TaskStatus.FAILED, 0)
    ratio = failed / total if total else 0.0

    if ratio > HEALTH_CRITICAL_FAILURE_RATIO or stuck > 0:
        status = HealthStatus.CRITICAL
    elif ratio > HEALTH_WARNING_FAILURE_RATIO or long_running > 0:
        status = HealthStatus.WARNING
    else:
        status = HealthStatus.HEALTHY

    return QueueHealth(
        queue_name=queue_name,
        status=status,
        pending=counts.get(TaskStatus.PENDING, 0),
        running=counts.get(TaskStatus.RUNNING, 0),
        failed=failed,
        long_running=long_running,
        total=total,
    )
