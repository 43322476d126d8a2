from __future__ import annotations

from typing import Annotated, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator

from drayage.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected


class BatchOperationConfig(BaseModel):
    """Chunk size bounds for one kind of bulk operation."""

    model_config = ConfigDict(frozen=True)

    base_size: Annotated[int, Field(ge=1)]
    min_size: Annotated[int, Field(ge=1)]
    max_size: Annotated[int, Field(ge=1)]

    @model_validator(mode='after')
    def validate_bounds(self) -> Self:
        report = ValidationReport('batch')
        if not self.min_size <= self.base_size <= self.max_size:
            report.add(
                ConfigurationError(
                    message='batch sizes must satisfy min_size <= base_size <= max_size',
                    code=ErrorCode.CONFIG_INVALID_BATCH,
                    notes=[
                        f'min_size={self.min_size}',
                        f'base_size={self.base_size}',
                        f'max_size={self.max_size}',
                    ],
                )
            )
        raise_collected(report)
        return self


DEFAULT_OPERATION = 'default'


def _default_operations() -> dict[str, BatchOperationConfig]:
    return {
        DEFAULT_OPERATION: BatchOperationConfig(base_size=100, min_size=10, max_size=1000),
        'persist': BatchOperationConfig(base_size=50, min_size=5, max_size=500),
        'update': BatchOperationConfig(base_size=200, min_size=20, max_size=2000),
        'remove': BatchOperationConfig(base_size=100, min_size=10, max_size=1000),
        'update_status': BatchOperationConfig(base_size=500, min_size=50, max_size=5000),
        'create_logs': BatchOperationConfig(base_size=1000, min_size=100, max_size=10000),
        'send_notifications': BatchOperationConfig(base_size=20, min_size=5, max_size=100),
    }


class BatchConfig(BaseModel):
    """Adaptive batch sizing and memory-bounding knobs."""

    model_config = ConfigDict(frozen=True)

    operations: dict[str, BatchOperationConfig] = Field(
        default_factory=_default_operations
    )
    # expunge_all() on the batch session every N chunks
    clear_interval_chunks: Annotated[int, Field(ge=1)] = 5
    slow_chunk_seconds: Annotated[float, Field(gt=0)] = 5.0
    slow_shrink_factor: Annotated[float, Field(gt=0, le=1)] = 0.8
    min_success_rate: Annotated[float, Field(ge=0, le=1)] = 0.9
    error_shrink_factor: Annotated[float, Field(gt=0, le=1)] = 0.9
    # Rolling samples per operation kind: trimmed to stats_trim once stats_window is hit
    stats_window: Annotated[int, Field(ge=2)] = 1000
    stats_trim: Annotated[int, Field(ge=1)] = 500
    max_reported_errors: Annotated[int, Field(ge=0)] = 50

    @model_validator(mode='after')
    def validate_operations(self) -> Self:
        report = ValidationReport('batch')
        if DEFAULT_OPERATION not in self.operations:
            report.add(
                ConfigurationError(
                    message=f"batch operations must include '{DEFAULT_OPERATION}'",
                    code=ErrorCode.CONFIG_INVALID_BATCH,
                    notes=[f'configured kinds: {sorted(self.operations)}'],
                    help_text='the default entry sizes operation kinds without their own entry',
                )
            )
        if self.stats_trim >= self.stats_window:
            report.add(
                ConfigurationError(
                    message='stats_trim must be smaller than stats_window',
                    code=ErrorCode.CONFIG_INVALID_BATCH,
                    notes=[f'stats_window={self.stats_window}', f'stats_trim={self.stats_trim}'],
                )
            )
        raise_collected(report)
        return self

    def for_operation(self, kind: str) -> BatchOperationConfig:
        return self.operations.get(kind, self.operations[DEFAULT_OPERATION])
