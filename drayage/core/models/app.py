# drayage/core/models/app.py
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict
from drayage.core.models.batch import BatchConfig
from drayage.core.models.store import PostgresConfig
from drayage.core.models.queues import QueueConfig
from drayage.core.models.resilience import WorkerResilienceConfig
from drayage.core.models.retry import RetryConfig
from drayage.core.types.errors import Severity
from drayage.core.utils.url import mask_database_url
import logging


class AppConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    store: PostgresConfig
    queues: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    resilience: WorkerResilienceConfig = Field(
        default_factory=WorkerResilienceConfig
    )
    # Persist hourly per-queue counters to drayage_queue_statistics
    record_queue_statistics: bool = True
    # Final failures at or above this severity are sent to the notification sink
    alert_min_severity: Severity = Severity.HIGH

    def log_config(self, logger: Optional[logging.Logger] = None) -> None:
        """
        Log the AppConfig in a human-readable format.
        Masks the database password.
        """
        if logger is None:
            logger = logging.getLogger()
        logger.info('AppConfig:\n%s', self._format_for_logging())

    def _format_for_logging(self) -> str:
        lines: list[str] = []

        lines.append('  store:')
        lines.append(f'    database_url: {mask_database_url(self.store.database_url)}')
        lines.append(f'    pool_size: {self.store.pool_size}')
        lines.append(f'    max_overflow: {self.store.max_overflow}')

        lines.append('  queues:')
        lines.append(f'    names: {", ".join(self.queues.all_queue_names())}')
        lines.append(f'    batch_size: {self.queues.batch_size}')
        lines.append(f'    task_timeout: {self.queues.task_timeout_seconds}s')
        lines.append(f'    default_ttl: {self.queues.default_ttl_seconds}s')
        if self.queues.retention_hours is not None:
            lines.append(f'    retention: {self.queues.retention_hours}h')

        lines.append('  retry:')
        for category, strategy in self.retry.strategies.items():
            lines.append(
                f'    {category.value}: {strategy.kind.value} '
                f'base={strategy.base_delay}s max={strategy.max_delay}s '
                f'retries={strategy.max_retries}'
            )
        lines.append(
            f'    default: {self.retry.default.kind.value} '
            f'base={self.retry.default.base_delay}s max={self.retry.default.max_delay}s'
        )

        lines.append('  resilience:')
        lines.append(f'    db_retry_initial_ms: {self.resilience.db_retry_initial_ms}ms')
        lines.append(f'    db_retry_max_ms: {self.resilience.db_retry_max_ms}ms')
        lines.append(f'    poll_interval_ms: {self.resilience.poll_interval_ms}ms')

        return '\n'.join(lines)
