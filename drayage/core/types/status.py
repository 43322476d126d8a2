# drayage/core/types/status.py
"""
Core enums and the task state machine.
This module should not import from other application modules.
"""

from enum import Enum


class TaskStatus(Enum):
    """Task execution status"""

    PENDING = 'pending'  # Waiting to be claimed; scheduled_at gates eligibility.
    RUNNING = 'running'  # Claimed by a worker and executing.
    RETRYING = 'retrying'  # Failed recoverably, waiting out its backoff delay.
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        """Whether this status represents a final state."""
        return self in TASK_TERMINAL_STATES


TASK_TERMINAL_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
})

# Statuses whose tasks may still be picked up by a worker.
TASK_ACTIVE_STATES: frozenset[TaskStatus] = frozenset({
    TaskStatus.PENDING,
    TaskStatus.RETRYING,
})

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.RETRYING,
    }),
    TaskStatus.RETRYING: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Edges the system takes outside the normal flow: manual retry, and the
# release of a claim whose handler never started.
ADMINISTRATIVE_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.RUNNING: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


def is_valid_transition(
    old: TaskStatus, new: TaskStatus, *, administrative: bool = False
) -> bool:
    """Whether `old -> new` is an edge of the task state machine.

    A status "transition" to itself is not an edge.
    """
    if new in ALLOWED_TRANSITIONS[old]:
        return True
    if administrative:
        return new in ADMINISTRATIVE_TRANSITIONS.get(old, frozenset())
    return False


class TaskType(Enum):
    """Kinds of background work the queue routes and dispatches."""

    SYNC = 'sync'  # external-API synchronization
    MEDIA_PROCESS = 'media_process'
    BATCH_PROCESS = 'batch_process'
    CONTENT_PUBLISH = 'content_publish'
    CACHE_WARMUP = 'cache_warmup'
    NOTIFICATION = 'notification'
    CLEANUP = 'cleanup'


class ExecutionStatus(Enum):
    """Outcome recorded on a TaskExecutionLog row."""

    RUNNING = 'running'
    COMPLETED = 'completed'
    FAILED = 'failed'
    RETRYING = 'retrying'
    CANCELLED = 'cancelled'
    SKIPPED = 'skipped'


class DependencyType(Enum):
    """How a dependent task's eligibility is derived from its prerequisite."""

    FINISH = 'finish'  # any terminal status
    SUCCESS = 'success'  # COMPLETED
    FAILURE = 'failure'  # FAILED
    CANCEL = 'cancel'  # CANCELLED

    def is_satisfied_by(self, status: TaskStatus) -> bool:
        match self:
            case DependencyType.FINISH:
                return status.is_terminal
            case DependencyType.SUCCESS:
                return status == TaskStatus.COMPLETED
            case DependencyType.FAILURE:
                return status == TaskStatus.FAILED
            case DependencyType.CANCEL:
                return status == TaskStatus.CANCELLED

    def is_unsatisfiable_by(self, status: TaskStatus) -> bool:
        """A terminal prerequisite that did not satisfy this dependency never will."""
        return status.is_terminal and not self.is_satisfied_by(status)
