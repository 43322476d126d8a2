"""Shared default constants for the drayage library."""

# Queue names used by priority/type routing.
DEFAULT_QUEUE: str = 'default'
HIGH_PRIORITY_QUEUE: str = 'high_priority'
LOW_PRIORITY_QUEUE: str = 'low_priority'

# Priorities at or above this value route to HIGH_PRIORITY_QUEUE,
# at or below LOW_PRIORITY_THRESHOLD to LOW_PRIORITY_QUEUE.
HIGH_PRIORITY_THRESHOLD: int = 8
LOW_PRIORITY_THRESHOLD: int = 3

MIN_PRIORITY: int = 1
MAX_PRIORITY: int = 10
DEFAULT_PRIORITY: int = 5
DEFAULT_MAX_RETRIES: int = 3

# Tasks dequeued per process_queue() pass.
DEFAULT_BATCH_SIZE: int = 10

# A RUNNING task older than this is reported as long-running by health checks.
DEFAULT_TASK_TIMEOUT_SECONDS: int = 300

# expires_at = created_at + DEFAULT_TTL_SECONDS when not given explicitly.
DEFAULT_TTL_SECONDS: int = 3600

DEFAULT_LOCK_TTL_SECONDS: int = 300

# Failure ratios for queue health.
HEALTH_WARNING_FAILURE_RATIO: float = 0.10
HEALTH_CRITICAL_FAILURE_RATIO: float = 0.30

DEFAULT_RETENTION_HOURS: int = 72
DEFAULT_IDEMPOTENCY_RETENTION_DAYS: int = 7

# Jitter bounds for deadlock retries, milliseconds.
DEADLOCK_RETRY_MIN_JITTER_MS: int = 100
DEADLOCK_RETRY_MAX_JITTER_MS: int = 1000

EXPIRED_TASK_MESSAGE: str = 'Task expired'
