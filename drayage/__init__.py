"""Drayage - a PostgreSQL-backed task queue for content management backends"""

# Install Rust-style error handler on import
from .core.errors import install_error_handler as _install_error_handler

_install_error_handler()

from .core.app import Drayage
from .core.models.app import AppConfig
from .core.models.store import PostgresConfig
from .core.models.queues import QueueConfig
from .core.models.retry import BackoffKind, RetryConfig, RetryStrategy
from .core.models.batch import BatchConfig, BatchOperationConfig
from .core.models.resilience import WorkerResilienceConfig
from .core.models.tasks import (
    Task,
    TaskPage,
    TaskFilters,
    HandlerOutcome,
    ProcessSummary,
    QueueHealth,
    HealthStatus,
)
from .core.types.status import TaskStatus, TaskType, ExecutionStatus, DependencyType
from .core.types.errors import ErrorCategory, Severity
from .core.queue.context import TaskContext
from .core.retry import (
    TaskFailure,
    NetworkFailure,
    DatabaseFailure,
    ValidationFailure,
    AuthenticationFailure,
    RateLimitFailure,
    BusinessRuleFailure,
    SystemFailure,
    ErrorClassification,
    ErrorClassifier,
)
from .core.consistency import RelatedRecordsProvider, compute_checksum
from .core.sinks import (
    MetricEvent,
    MetricsSink,
    Notification,
    NotificationSink,
)
from .core.errors import (
    ErrorCode,
    DrayageError,
    ConfigurationError,
    TaskValidationError,
    TaskEnqueueError,
    TaskNotFoundError,
    ConsistencyViolation,
    IllegalTransitionError,
    LockUnavailableError,
    ValidationReport,
    MultipleValidationErrors,
)

__all__ = [
    # Core
    'Drayage',
    'AppConfig',
    'PostgresConfig',
    'QueueConfig',
    'RetryConfig',
    'RetryStrategy',
    'BackoffKind',
    'BatchConfig',
    'BatchOperationConfig',
    'WorkerResilienceConfig',
    # Tasks
    'Task',
    'TaskPage',
    'TaskFilters',
    'TaskContext',
    'HandlerOutcome',
    'ProcessSummary',
    'QueueHealth',
    'HealthStatus',
    'TaskStatus',
    'TaskType',
    'ExecutionStatus',
    'DependencyType',
    # Failures
    'ErrorCategory',
    'Severity',
    'TaskFailure',
    'NetworkFailure',
    'DatabaseFailure',
    'ValidationFailure',
    'AuthenticationFailure',
    'RateLimitFailure',
    'BusinessRuleFailure',
    'SystemFailure',
    'ErrorClassification',
    'ErrorClassifier',
    # Consistency
    'RelatedRecordsProvider',
    'compute_checksum',
    # Sinks
    'MetricEvent',
    'MetricsSink',
    'Notification',
    'NotificationSink',
    # Errors
    'ErrorCode',
    'DrayageError',
    'ConfigurationError',
    'TaskValidationError',
    'TaskEnqueueError',
    'TaskNotFoundError',
    'ConsistencyViolation',
    'IllegalTransitionError',
    'LockUnavailableError',
    'ValidationReport',
    'MultipleValidationErrors',
]
