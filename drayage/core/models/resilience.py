from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, Field, model_validator
from drayage.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class WorkerResilienceConfig(BaseModel):
    """
    Timing of a worker process.

    - backoff for transient database errors in the claim and startup paths
    - the idle sleep after a claim pass that found nothing
    - the maintenance cadence (due retries, expiry, lock sweep)
    - how long a stopping worker waits for tasks in hand
    """

    db_retry_initial_ms: Annotated[int, Field(ge=100, le=60_000)] = Field(
        default=500,
        description='First backoff after a transient DB error (100ms-60s)',
    )
    db_retry_max_ms: Annotated[int, Field(ge=500, le=300_000)] = Field(
        default=30_000,
        description='Backoff ceiling for transient DB errors (500ms-5min)',
    )
    db_retry_max_attempts: Annotated[int, Field(ge=0, le=10_000)] = Field(
        default=0,
        description='Consecutive transient DB errors tolerated; 0 means no limit',
    )
    poll_interval_ms: Annotated[int, Field(ge=100, le=300_000)] = Field(
        default=2_000,
        description='Sleep between claim passes that found no work (100ms-5min)',
    )
    maintenance_interval_ms: Annotated[int, Field(ge=1_000, le=3_600_000)] = Field(
        default=5_000,
        description='Interval of the due-retry / expiry / lock sweep loop (1s-1h)',
    )
    shutdown_grace_ms: Annotated[int, Field(ge=0, le=3_600_000)] = Field(
        default=30_000,
        description='Wait for running tasks on stop before cancelling them (0-1h)',
    )

    @model_validator(mode='after')
    def validate_timing(self) -> Self:
        report = ValidationReport('resilience')
        if self.db_retry_max_ms < self.db_retry_initial_ms:
            report.add(
                ConfigurationError(
                    message='db_retry_max_ms must be >= db_retry_initial_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'db_retry_initial_ms={self.db_retry_initial_ms}ms',
                        f'db_retry_max_ms={self.db_retry_max_ms}ms',
                    ],
                    help_text='increase db_retry_max_ms or reduce db_retry_initial_ms',
                )
            )
        if self.poll_interval_ms > self.maintenance_interval_ms * 10:
            report.add(
                ConfigurationError(
                    message='poll_interval_ms is out of proportion to maintenance_interval_ms',
                    code=ErrorCode.CONFIG_INVALID_RESILIENCE,
                    notes=[
                        f'poll_interval_ms={self.poll_interval_ms}ms',
                        f'maintenance_interval_ms={self.maintenance_interval_ms}ms',
                    ],
                    help_text='promoted retries would wait up to a full poll interval to be claimed',
                )
            )

        raise_collected(report)
        return self
