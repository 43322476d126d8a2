# drayage/core/retry/policy.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from drayage.core.models.retry import RetryConfig, RetryStrategy
from drayage.core.retry.classifier import ErrorClassification


@dataclass(frozen=True)
class RetryPlan:
    """Decision for one failed attempt.

    delay and next_retry_at are only meaningful when should_retry is True.
    max_retries is the effective budget the decision was made against.
    """

    should_retry: bool
    delay: float
    next_retry_at: Optional[datetime]
    strategy: RetryStrategy
    reason: str
    max_retries: int

    def to_dict(self) -> dict[str, Any]:
        return {
            'should_retry': self.should_retry,
            'delay': self.delay,
            'next_retry_at': self.next_retry_at.isoformat() if self.next_retry_at else None,
            'strategy': self.strategy.kind.value,
            'reason': self.reason,
            'max_retries': self.max_retries,
        }


class RetryPolicyEngine:
    """Pure: turns a classification and the attempt count into a RetryPlan."""

    def __init__(self, config: Optional[RetryConfig] = None) -> None:
        self.config = config or RetryConfig()

    def strategy_for(self, classification: ErrorClassification) -> RetryStrategy:
        return self.config.strategy_for(classification.category)

    def plan_retry(
        self,
        classification: ErrorClassification,
        retry_count: int,
        max_retries: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RetryPlan:
        strategy = self.strategy_for(classification)
        budget = strategy.max_retries
        if max_retries is not None:
            budget = min(budget, max_retries)

        if not classification.recoverable:
            return RetryPlan(
                should_retry=False,
                delay=0,
                next_retry_at=None,
                strategy=strategy,
                reason=f'{classification.category.value} errors are not recoverable',
                max_retries=budget,
            )

        if retry_count >= budget:
            return RetryPlan(
                should_retry=False,
                delay=0,
                next_retry_at=None,
                strategy=strategy,
                reason=f'retry budget exhausted ({retry_count}/{budget})',
                max_retries=budget,
            )

        delay = strategy.compute_delay(retry_count)
        now = now or datetime.now(timezone.utc)
        return RetryPlan(
            should_retry=True,
            delay=delay,
            next_retry_at=now + timedelta(seconds=delay),
            strategy=strategy,
            reason=f'retry {retry_count + 1}/{budget} in {delay:g}s ({strategy.kind.value})',
            max_retries=budget,
        )
