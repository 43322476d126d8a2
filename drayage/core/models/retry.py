from __future__ import annotations

from enum import Enum
from typing import Annotated, Self
from pydantic import BaseModel, ConfigDict, Field, model_validator

from drayage.core.errors import ConfigurationError, ErrorCode, ValidationReport, raise_collected
from drayage.core.types.errors import ErrorCategory


class BackoffKind(str, Enum):
    EXPONENTIAL = 'exponential'
    LINEAR = 'linear'
    FIXED = 'fixed'


class RetryStrategy(BaseModel):
    """
    Backoff schedule for one error category.

    Fields:
        kind: exponential (base * 2**n), linear (base * (n + 1)) or fixed (delay)
        base_delay: seconds, used by exponential and linear
        max_delay: cap in seconds applied to every computed delay
        delay: seconds, used by fixed
        max_retries: retries this category allows, before the per-task budget
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: BackoffKind = BackoffKind.EXPONENTIAL
    base_delay: Annotated[float, Field(ge=0, le=86_400)] = 10
    max_delay: Annotated[float, Field(ge=0, le=86_400)] = 300
    delay: Annotated[float, Field(ge=0, le=86_400)] = 60
    max_retries: Annotated[int, Field(ge=0, le=100)] = 3

    @model_validator(mode='after')
    def validate_delays(self) -> Self:
        report = ValidationReport('retry')
        if self.kind == BackoffKind.FIXED and self.max_delay < self.delay:
            report.add(
                ConfigurationError(
                    message='max_delay must be >= delay for fixed backoff',
                    code=ErrorCode.CONFIG_INVALID_RETRY,
                    notes=[f'delay={self.delay}s', f'max_delay={self.max_delay}s'],
                    help_text='raise max_delay or lower delay',
                )
            )
        if self.kind != BackoffKind.FIXED and self.max_delay < self.base_delay:
            report.add(
                ConfigurationError(
                    message='max_delay must be >= base_delay',
                    code=ErrorCode.CONFIG_INVALID_RETRY,
                    notes=[f'base_delay={self.base_delay}s', f'max_delay={self.max_delay}s'],
                    help_text='raise max_delay or lower base_delay',
                )
            )
        raise_collected(report)
        return self

    def compute_delay(self, retry_count: int) -> float:
        """Seconds to wait before retry number `retry_count + 1`."""
        match self.kind:
            case BackoffKind.EXPONENTIAL:
                delay = self.base_delay * (2 ** retry_count)
            case BackoffKind.LINEAR:
                delay = self.base_delay * (retry_count + 1)
            case BackoffKind.FIXED:
                delay = self.delay
        return min(delay, self.max_delay)


def _default_strategies() -> dict[ErrorCategory, RetryStrategy]:
    return {
        ErrorCategory.NETWORK: RetryStrategy(
            kind=BackoffKind.EXPONENTIAL, base_delay=5, max_delay=300, max_retries=5,
        ),
        ErrorCategory.DATABASE: RetryStrategy(
            kind=BackoffKind.LINEAR, base_delay=10, max_delay=60, max_retries=3,
        ),
        ErrorCategory.AUTHENTICATION: RetryStrategy(
            kind=BackoffKind.FIXED, delay=60, max_delay=60, max_retries=2,
        ),
        ErrorCategory.RATE_LIMIT: RetryStrategy(
            kind=BackoffKind.EXPONENTIAL, base_delay=60, max_delay=600, max_retries=3,
        ),
        ErrorCategory.SYSTEM: RetryStrategy(
            kind=BackoffKind.LINEAR, base_delay=30, max_delay=120, max_retries=2,
        ),
    }


class RetryConfig(BaseModel):
    """Per-category retry strategies plus the fallback for unmapped categories."""

    model_config = ConfigDict(frozen=True)

    strategies: dict[ErrorCategory, RetryStrategy] = Field(
        default_factory=_default_strategies
    )
    default: RetryStrategy = Field(
        default_factory=lambda: RetryStrategy(
            kind=BackoffKind.EXPONENTIAL, base_delay=10, max_delay=300, max_retries=3,
        )
    )

    def strategy_for(self, category: ErrorCategory) -> RetryStrategy:
        return self.strategies.get(category, self.default)
